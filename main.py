#!/usr/bin/env python3
"""
Layout Review Dashboard - Main Entry Point

Usage:
    python main.py serve               # Run the review dashboard
    python main.py detect page.pdf     # Headless detection with annotated output
    python main.py status              # Check the detection backend once
    python main.py config              # Create sample config
    python main.py info                # Show environment information
"""

import argparse
import asyncio
import json
import logging
import mimetypes
import sys
from pathlib import Path

from dotenv import load_dotenv

from layout_review.core.annotation_renderer import encode_png
from layout_review.core.config_manager import ConfigurationManager
from layout_review.core.coordinate_mapper import fit_inside

# Load environment variables early
load_dotenv()

logger = logging.getLogger(__name__)


def setup_basic_logging():
    """Setup basic logging before configuration is loaded."""
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[logging.StreamHandler()]
    )


def show_environment_info(config):
    """Show environment information for debugging."""
    env_info = ConfigurationManager.get_environment_info()

    print("🔧 Environment Information:")
    print(f"   Python: {env_info['python_version']}")
    print(f"   Platform: {env_info['platform']}")
    print(f"   Working Directory: {env_info['working_directory']}")

    print("\n⚙️  Configuration:")
    print(f"   Detection Backend: {config['backend']['url']}")
    print(f"   Default Confidence: {config['detection']['default_confidence']}")
    print(f"   Default IoU: {config['detection']['default_iou']}")
    print(f"   Max Upload: {config['upload']['max_size_bytes'] // (1024 * 1024)}MB")
    print(f"   Polling Interval: {config['monitoring']['polling_interval']}s")
    print(f"   Result Store: {config['storage']['backend']}")
    print(f"   Dashboard: http://{config['dashboard']['host']}:{config['dashboard']['port']}")


def run_serve_mode(config):
    """Run the review dashboard."""
    import uvicorn

    from layout_review.dashboard.dashboard_app import create_app

    logger.info("🚀 Starting Layout Review Dashboard")
    uvicorn.run(
        create_app(config),
        host=config['dashboard']['host'],
        port=config['dashboard']['port'],
        log_level=config['logging']['level'].lower(),
    )


async def run_status_mode(config):
    """Check backend liveness once and print model information."""
    from layout_review.core.detection_client import DetectionClient
    from layout_review.review.status_monitor import BackendStatus, StatusMonitor

    client = DetectionClient.from_config(config)
    try:
        monitor = StatusMonitor(client)
        status = await monitor.check_once()
    finally:
        await client.aclose()

    print(f"🔌 Backend {config['backend']['url']}: {status.value}")
    if status is BackendStatus.CONNECTED and monitor.model_info:
        info = monitor.model_info
        print(f"   Model: {info.model_type} ({info.model_path})")
        print(f"   Classes ({info.num_classes}): {', '.join(info.class_names)}")
    return status is BackendStatus.CONNECTED


async def run_detect_mode(config, filename, output_dir, save):
    """Upload, detect and write the export JSON plus annotated pages."""
    from layout_review.core.detection_client import DetectionClient
    from layout_review.core.persistence_client import LocalPersistenceClient
    from layout_review.core.result_store import create_result_store
    from layout_review.review.detection_session import DetectionSession, SaveOutcome
    from layout_review.review.status_monitor import StatusMonitor

    path = Path(filename)
    if not path.is_file():
        logger.error(f"❌ File not found: {filename}")
        return False

    content_type = mimetypes.guess_type(path.name)[0] or 'application/octet-stream'
    client = DetectionClient.from_config(config)
    persistence = LocalPersistenceClient(create_result_store(config)) if save else None

    try:
        session = DetectionSession.from_config(config, client, persistence)
        await StatusMonitor(client, on_change=session.set_backend_status).check_once()

        if not await session.upload(path.name, path.read_bytes(), content_type):
            logger.error(f"❌ {session.message.text}")
            return False
        if not await session.detect():
            logger.error(f"❌ {session.message.text}")
            return False
    finally:
        await client.aclose()

    logger.info(f"📋 {session.message.text}")

    output = Path(output_dir)
    output.mkdir(parents=True, exist_ok=True)

    exported = session.export()
    if exported:
        export_name, payload = exported
        (output / export_name).write_text(json.dumps(payload, indent=2), encoding='utf-8')
        logger.info(f"💾 Export saved to: {output / export_name}")

    stem = path.name.split('.')[0]
    for page_number in range(1, session.total_pages + 1):
        session.go_to_page(page_number)
        width, height = fit_inside(*session.natural_size(), 1200, 1600)
        frame = session.render(int(round(width)), int(round(height)))
        if frame is None:
            continue
        page_path = output / f"{stem}_page_{page_number}.png"
        page_path.write_bytes(encode_png(frame))
        logger.info(f"🖼️  Page {page_number}: {len(session.current_page_detections)} detections -> {page_path}")

    if save:
        result = await session.save()
        if result.outcome is not SaveOutcome.SAVED:
            logger.warning(f"⚠️ {result.message}")
            return False
        logger.info(f"💾 {result.message}")

    stats = session.stats()
    logger.info("📋 Detection Summary:")
    logger.info(f"   📄 Pages: {session.total_pages}")
    logger.info(f"   🎯 Detections: {stats['total_detections']}")
    logger.info(f"   📊 Average Confidence: {stats['average_confidence']}")
    logger.info(f"   ⚠️  Low Confidence: {stats['low_confidence']}")
    return True


def main():
    """Main entry point."""
    setup_basic_logging()

    parser = argparse.ArgumentParser(
        description="Layout Detection Review Dashboard",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py serve                          # Start the dashboard
  python main.py serve --port 9000              # Dashboard on another port
  python main.py detect scan.png                # Detect and write results to ./output
  python main.py detect report.pdf --save       # Detect and save the result
  python main.py status                         # Check the detection backend
  python main.py config                         # Create sample config
  python main.py info                           # Show environment info
        """
    )

    parser.add_argument(
        'mode',
        choices=['serve', 'detect', 'status', 'config', 'info'],
        help='Run mode'
    )

    parser.add_argument(
        'filename',
        nargs='?',
        help='Image or PDF to run detection on (required for detect mode)'
    )

    parser.add_argument('--confidence', type=float, help='Confidence threshold override')
    parser.add_argument('--iou', type=float, help='IoU threshold override')
    parser.add_argument('--output-dir', default='output', help='Output directory for detect mode')
    parser.add_argument('--save', action='store_true', help='Save the detect result to the result store')
    parser.add_argument('--port', type=int, help='Dashboard port override')

    parser.add_argument(
        '--log-level',
        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'],
        help='Override log level'
    )

    args = parser.parse_args()

    # Handle special modes first
    if args.mode == 'config':
        ConfigurationManager.create_sample_env_file()
        return

    try:
        # Load configuration
        config = ConfigurationManager.load_configuration()

        # Override config with command line arguments
        if args.confidence is not None:
            config['detection']['default_confidence'] = args.confidence
        if args.iou is not None:
            config['detection']['default_iou'] = args.iou
        if args.port:
            config['dashboard']['port'] = args.port
        if args.log_level:
            config['logging']['level'] = args.log_level

        # Setup logging with ConfigurationManager
        ConfigurationManager.setup_logging(config)

        if args.mode == 'info':
            show_environment_info(config)
            return

        if args.mode == 'detect' and not args.filename:
            logger.error("❌ Filename is required for detect mode")
            parser.print_help()
            sys.exit(1)

        if args.mode == 'serve':
            run_serve_mode(config)
        elif args.mode == 'status':
            if not asyncio.run(run_status_mode(config)):
                sys.exit(2)
        elif args.mode == 'detect':
            if not asyncio.run(run_detect_mode(config, args.filename, args.output_dir, args.save)):
                sys.exit(1)

    except KeyboardInterrupt:
        logger.info("🛑 Application stopped by user")
    except Exception as e:
        logger.error(f"❌ Application failed: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
