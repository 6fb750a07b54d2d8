"""
Layout Review Package

Review dashboard for document layout detection: upload images or PDFs, run
them through a layout detection backend, inspect the annotated boxes and save
reviewed results.
"""

__version__ = "1.0.0"
__author__ = "Layout Review Team"
