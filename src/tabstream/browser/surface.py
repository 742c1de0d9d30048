"""Frame decoding and drawing targets for the screencast pipeline."""

import asyncio
import base64
import binascii
import io
import logging
from pathlib import Path
from typing import Protocol, runtime_checkable

from PIL import Image

logger = logging.getLogger(__name__)


class FrameDecodeError(ValueError):
    """A screencast frame payload could not be decoded into an image."""
    pass


def decode_frame(data: str) -> Image.Image:
    """Decode a base64 jpeg/png screencast payload into a Pillow image.

    Raises:
        FrameDecodeError: If the payload is not valid base64 or not an image.
    """
    try:
        raw = base64.b64decode(data, validate=True)
        image = Image.open(io.BytesIO(raw))
        image.load()
    except (binascii.Error, OSError, ValueError) as e:
        raise FrameDecodeError(f'Invalid frame payload: {e}') from e

    if image.mode not in ('RGB', 'RGBA'):
        image = image.convert('RGB')
    return image


async def decode_frame_async(data: str) -> Image.Image:
    """decode_frame() in a worker thread so the event loop keeps acknowledging frames."""
    return await asyncio.to_thread(decode_frame, data)


@runtime_checkable
class FrameSurface(Protocol):
    """Something a decoded frame can be drawn onto (a canvas, a window, a file)."""

    def draw(self, image: Image.Image, x: int, y: int, width: int, height: int) -> None:
        ...


class ImageSurface:
    """In-memory Pillow canvas that always holds the latest composed frame.

    The canvas grows to fit the largest frame drawn so far; frames smaller than
    the canvas are pasted at their offset without scaling.
    """

    def __init__(self, width: int = 0, height: int = 0, background: tuple[int, int, int] = (255, 255, 255)):
        self.background = background
        self.image: Image.Image | None = Image.new('RGB', (width, height), background) if width and height else None
        self.frames_drawn = 0

    @property
    def size(self) -> tuple[int, int] | None:
        return self.image.size if self.image is not None else None

    def draw(self, image: Image.Image, x: int, y: int, width: int, height: int) -> None:
        if width <= 0 or height <= 0:
            raise ValueError(f'Invalid frame size {width}x{height}')

        if image.size != (width, height):
            image = image.resize((width, height))

        needed = (max(x + width, self.image.width if self.image else 0), max(y + height, self.image.height if self.image else 0))
        if self.image is None or self.image.size != needed:
            canvas = Image.new('RGB', needed, self.background)
            if self.image is not None:
                canvas.paste(self.image, (0, 0))
            self.image = canvas

        if image.mode == 'RGBA':
            self.image.paste(image, (x, y), image)
        else:
            self.image.paste(image, (x, y))
        self.frames_drawn += 1

    def save(self, path: str | Path, format: str | None = None) -> Path:
        """Write the current canvas to disk.

        Raises:
            ValueError: If no frame has been drawn yet.
        """
        if self.image is None:
            raise ValueError('No frame has been drawn yet')
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        self.image.save(path, format=format)
        logger.debug(f'[ImageSurface] Saved {self.image.width}x{self.image.height} frame to {path}')
        return path
