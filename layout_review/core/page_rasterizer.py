"""
Page Rasterizer

Converts uploaded documents into page images with known natural pixel
dimensions:
- PDF documents are rendered page by page with PyMuPDF at a fixed scale
- Raster images are decoded with Pillow into a single implicit page
- Saved data URLs are decoded back into pages for the results viewer
"""

import asyncio
import base64
import binascii
import dataclasses
import io
import logging
from typing import List

import fitz  # PyMuPDF
from PIL import Image, UnidentifiedImageError

from .errors import DecodeError, RenderError, UnsupportedFormat
from .models import PageImage

logger = logging.getLogger(__name__)

DEFAULT_RENDER_SCALE = 2.0


class PageRasterizer:
    """
    Renders PDF pages to PNG rasters.

    Pages are rendered strictly in order 1..N. Rendering aborts on the first
    page that fails, so callers never see a partial page list.
    """

    def __init__(self, scale: float = DEFAULT_RENDER_SCALE):
        if scale <= 0:
            raise ValueError("Render scale must be positive")
        self.scale = scale

    def rasterize(self, file_bytes: bytes) -> List[PageImage]:
        """
        Render every page of a PDF document.

        Args:
            file_bytes: Raw PDF file content

        Returns:
            Ordered list of PageImage, one per page

        Raises:
            UnsupportedFormat: bytes are not a readable PDF document
            RenderError: a page failed to render
        """
        doc = self._open_document(file_bytes)
        try:
            page_count = doc.page_count
            logger.info(f"PDF loaded: {page_count} pages")

            pages: List[PageImage] = []
            for index in range(page_count):
                page_number = index + 1
                logger.debug(f"Converting page {page_number}/{page_count}...")
                pages.append(self._render_page(doc, page_number))

            logger.info(f"All {len(pages)} pages converted")
            return pages
        finally:
            doc.close()

    async def rasterize_async(self, file_bytes: bytes) -> List[PageImage]:
        """Run rasterize() in the default executor. Not cancellable once started."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self.rasterize, file_bytes)

    def _open_document(self, file_bytes: bytes) -> "fitz.Document":
        if not file_bytes:
            raise UnsupportedFormat("PDF file is empty")

        try:
            doc = fitz.open(stream=file_bytes, filetype="pdf")
        except Exception as e:
            logger.error(f"PDF open failed: {e}")
            raise UnsupportedFormat(f"File is not a valid PDF document: {e}")

        if doc.needs_pass:
            doc.close()
            raise UnsupportedFormat("Password protected PDFs are not supported")

        if doc.page_count == 0:
            doc.close()
            raise UnsupportedFormat("PDF document has no pages")

        return doc

    def _render_page(self, doc: "fitz.Document", page_number: int) -> PageImage:
        try:
            page = doc.load_page(page_number - 1)
            pix = page.get_pixmap(matrix=fitz.Matrix(self.scale, self.scale))
            return PageImage(
                page_number=page_number,
                image_data=pix.tobytes("png"),
                width=pix.width,
                height=pix.height,
            )
        except Exception as e:
            logger.error(f"Page {page_number} render failed: {e}")
            raise RenderError(page_number, str(e))


def decode_image(file_bytes: bytes, content_type: str = "") -> PageImage:
    """
    Decode a raster image into the implicit page 1.

    The image is fully decoded before its dimensions are trusted.

    Raises:
        DecodeError: bytes are empty, truncated or not an image
    """
    if not file_bytes:
        raise DecodeError("Image file is empty")

    try:
        with Image.open(io.BytesIO(file_bytes)) as img:
            img.load()
            width, height = img.size
            image_format = img.format
    except Image.DecompressionBombError as e:
        logger.error(f"Image decode refused: {e}")
        raise DecodeError("Image is too large to decode")
    except (UnidentifiedImageError, OSError, SyntaxError, ValueError) as e:
        logger.error(f"Image decode failed: {e}")
        raise DecodeError()

    if width <= 0 or height <= 0:
        raise DecodeError("Image has no pixels")

    mime_type = content_type if content_type.startswith('image/') else \
        Image.MIME.get(image_format, 'image/png')

    return PageImage(
        page_number=1,
        image_data=file_bytes,
        width=width,
        height=height,
        mime_type=mime_type,
    )


def decode_data_url(data_url: str, page_number: int = 1) -> PageImage:
    """Decode a stored base64 data URL (as written by PageImage.to_data_url)."""
    header, sep, payload = (data_url or '').partition(',')
    if not sep or not header.startswith('data:') or not header.endswith(';base64'):
        raise DecodeError("Stored image is not a base64 data URL")

    try:
        file_bytes = base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError):
        raise DecodeError("Stored image data is corrupt")

    content_type = header[len('data:'):-len(';base64')]
    page = decode_image(file_bytes, content_type)
    return dataclasses.replace(page, page_number=page_number)
