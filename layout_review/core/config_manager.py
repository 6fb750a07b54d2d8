"""
Configuration Manager

Handles loading and validating configuration from environment variables
and configuration files.
"""

import os
import sys
import logging
from typing import Dict, Any, List
from pathlib import Path

logger = logging.getLogger(__name__)

DEFAULT_LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def _split_list(value: str) -> List[str]:
    return [item.strip() for item in value.split(',') if item.strip()]


class ConfigurationManager:
    """Manages application configuration loading and validation."""

    @staticmethod
    def load_configuration() -> Dict[str, Any]:
        """Load configuration from environment variables and defaults."""
        config = {
            'backend': {
                'url': os.getenv('DETECTION_BACKEND_URL', 'http://localhost:8000').rstrip('/'),
                'timeout': float(os.getenv('DETECTION_TIMEOUT', '120')),
            },
            'detection': {
                'default_confidence': float(os.getenv('DEFAULT_CONFIDENCE', '0.25')),
                'default_iou': float(os.getenv('DEFAULT_IOU', '0.45')),
            },
            'upload': {
                'max_size_bytes': int(float(os.getenv('MAX_UPLOAD_SIZE_MB', '100')) * 1024 * 1024),
                'pdf_render_scale': float(os.getenv('PDF_RENDER_SCALE', '2.0')),
            },
            'monitoring': {
                'polling_interval': int(os.getenv('POLLING_INTERVAL', '30')),
            },
            'storage': {
                # json or sqlite
                'backend': os.getenv('RESULT_STORE', 'json').lower(),
                'results_file': os.getenv('RESULTS_FILE', 'result.json'),
                'fallback_dirs': _split_list(os.getenv('RESULTS_FALLBACK_DIRS', '')),
                'database_path': os.getenv('RESULTS_DB', 'data/databases/results.db'),
            },
            'logging': {
                'level': os.getenv('LOG_LEVEL', 'INFO').upper(),
                'format': os.getenv('LOG_FORMAT', DEFAULT_LOG_FORMAT),
                'file': os.getenv('LOG_FILE', 'layout_review.log'),
            },
            'dashboard': {
                'host': os.getenv('DASHBOARD_HOST', '0.0.0.0'),
                'port': int(os.getenv('DASHBOARD_PORT', '8001')),
            },
        }

        # Validate critical configuration
        ConfigurationManager._validate_configuration(config)

        logger.info("✅ Configuration loaded successfully")
        return config

    @staticmethod
    def _validate_configuration(config: Dict[str, Any]):
        """Validate that required configuration is present."""
        errors = []

        backend_url = config['backend']['url']
        if not backend_url.startswith(('http://', 'https://')):
            errors.append(f"DETECTION_BACKEND_URL must be an http(s) URL, got '{backend_url}'")

        for key in ('default_confidence', 'default_iou'):
            value = config['detection'][key]
            if not 0.0 <= value <= 1.0:
                errors.append(f"{key.upper()} must be between 0 and 1, got {value}")

        if config['upload']['max_size_bytes'] <= 0:
            errors.append("MAX_UPLOAD_SIZE_MB must be positive")

        if config['upload']['pdf_render_scale'] <= 0:
            errors.append("PDF_RENDER_SCALE must be positive")

        if config['monitoring']['polling_interval'] <= 0:
            errors.append("POLLING_INTERVAL must be positive")

        if config['storage']['backend'] not in ('json', 'sqlite'):
            errors.append(f"RESULT_STORE must be 'json' or 'sqlite', got '{config['storage']['backend']}'")

        if errors:
            error_msg = "Configuration validation failed:\n" + \
                "\n".join(f"  - {error}" for error in errors)
            logger.error(error_msg)
            raise ValueError(error_msg)

    @staticmethod
    def setup_logging(config: Dict[str, Any]):
        """Setup logging configuration."""
        log_level = getattr(logging, config['logging']['level'], logging.INFO)
        log_format = config['logging']['format']

        handlers = [logging.StreamHandler()]
        if config['logging'].get('file'):
            handlers.append(logging.FileHandler(config['logging']['file']))

        logging.basicConfig(
            level=log_level,
            format=log_format,
            handlers=handlers
        )

        # Set specific logger levels
        logging.getLogger('httpx').setLevel(logging.WARNING)
        logging.getLogger('httpcore').setLevel(logging.WARNING)
        logging.getLogger('uvicorn.access').setLevel(logging.WARNING)

        logger.info(
            f"Logging configured at {config['logging']['level']} level")

    @staticmethod
    def get_environment_info() -> Dict[str, Any]:
        """Get information about the current environment."""
        return {
            'python_version': sys.version,
            'platform': os.name,
            'working_directory': os.getcwd(),
            'environment_variables': {
                key: '***' if 'key' in key.lower() or 'secret' in key.lower() or 'password' in key.lower()
                else value
                for key, value in os.environ.items()
                if key.startswith(('DETECTION_', 'DEFAULT_', 'MAX_', 'RESULT', 'LOG_', 'POLLING_', 'DASHBOARD_'))
            }
        }

    @staticmethod
    def create_sample_env_file(filepath: str = '.env.sample'):
        """Create a sample environment file with all configuration options."""
        sample_content = '''# Detection Backend
DETECTION_BACKEND_URL=http://localhost:8000
DETECTION_TIMEOUT=120

# Detection Defaults
DEFAULT_CONFIDENCE=0.25
DEFAULT_IOU=0.45

# Upload Configuration
MAX_UPLOAD_SIZE_MB=100
PDF_RENDER_SCALE=2.0

# Monitoring Configuration
POLLING_INTERVAL=30

# Result Storage (json or sqlite)
RESULT_STORE=json
RESULTS_FILE=result.json
RESULTS_FALLBACK_DIRS=
RESULTS_DB=data/databases/results.db

# Logging Configuration
LOG_LEVEL=INFO
LOG_FORMAT=%(asctime)s - %(name)s - %(levelname)s - %(message)s
LOG_FILE=layout_review.log

# Dashboard
DASHBOARD_HOST=0.0.0.0
DASHBOARD_PORT=8001
'''

        Path(filepath).write_text(sample_content, encoding='utf-8')

        logger.info(f"Sample environment file created: {filepath}")
