"""
Error Taxonomy

Exceptions raised by the layout review core. The session boundary converts
them into user-facing messages and the web layer maps them to HTTP status
codes.
"""


class LayoutReviewError(Exception):
    """Base class for all layout review errors."""

    user_message = "Unexpected error"

    def __init__(self, message: str = None):
        super().__init__(message or self.user_message)
        self.message = message or self.user_message


class ValidationError(LayoutReviewError):
    """Upload rejected before any network call."""

    user_message = "Invalid upload"


class UnsupportedFileType(ValidationError):
    """File is neither an image nor a PDF document."""

    user_message = "Please choose an image file (jpg, png) or a PDF"


class FileTooLarge(ValidationError):
    """File exceeds the configured upload limit."""

    def __init__(self, size: int, limit: int):
        self.size = size
        self.limit = limit
        super().__init__(f"File too large! Maximum is {format_limit(limit)}.")


class TransportError(LayoutReviewError):
    """Detection backend unreachable or returned a non-2xx response."""

    user_message = "Detection backend is not reachable"

    def __init__(self, message: str = None, status_code: int = None):
        super().__init__(message)
        self.status_code = status_code


class RasterizationError(LayoutReviewError):
    """PDF could not be converted to page images."""

    user_message = "Could not convert PDF"


class UnsupportedFormat(RasterizationError):
    """Byte stream is not a valid PDF document."""

    user_message = "File is not a valid PDF document"


class RenderError(RasterizationError):
    """A single PDF page failed to render."""

    def __init__(self, page_number: int, reason: str):
        self.page_number = page_number
        super().__init__(f"Failed to render page {page_number}: {reason}")


class DecodeError(LayoutReviewError):
    """Image bytes are corrupt or not a raster format Pillow understands."""

    user_message = "Could not load image. The file may be corrupt."


class ConflictError(LayoutReviewError):
    """A result with the same image name was already saved."""

    def __init__(self, image_name: str, message: str = None):
        self.image_name = image_name
        super().__init__(message or f'Image "{image_name}" was already saved!')


def format_limit(num_bytes: int) -> str:
    """Format an upload limit such as 104857600 as '100MB'."""
    mb = num_bytes / (1024 * 1024)
    if mb == int(mb):
        return f"{int(mb)}MB"
    return f"{mb:.1f}MB"
