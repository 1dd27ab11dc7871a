"""Stitch viewport-sized captures into one seamless image with Pillow."""

from __future__ import annotations

from dataclasses import dataclass

from PIL import Image


class StitchError(ValueError):
    """Raised when the strips do not cover the requested height."""


@dataclass(frozen=True)
class Strip:
    """One capture and the vertical offset (in pixels) it was taken at."""

    image: Image.Image
    offset: int


def plan_offsets(total_height: int, viewport_height: int) -> list[int]:
    """Scroll offsets that cover ``total_height`` with viewport-tall strips.

    The last offset is clamped so the final strip ends exactly at the
    bottom, which is what a browser does with an over-long scroll; that
    strip then overlaps the previous one.
    """
    if total_height <= 0 or viewport_height <= 0:
        return [0]
    max_offset = max(0, total_height - viewport_height)
    offsets = list(range(0, max_offset, viewport_height))
    offsets.append(max_offset)
    return sorted(set(offsets))


def stitch_strips(strips: list[Strip], total_height: int, width: int | None = None) -> Image.Image:
    """Paste strips at their real offsets so every row comes from one strip.

    Rows a strip shares with the area already filled are cropped off its
    top; rows past ``total_height`` are cropped off its bottom.

    Raises:
        StitchError: If there are no strips or they leave a gap.
    """
    if not strips:
        raise StitchError("No strips to stitch")

    width = width or strips[0].image.width
    canvas = Image.new("RGB", (width, total_height), "white")

    covered = 0
    for strip in sorted(strips, key=lambda s: s.offset):
        top = strip.offset
        bottom = min(top + strip.image.height, total_height)
        if bottom <= covered:
            continue  # entirely overlapped by earlier strips
        if top > covered:
            raise StitchError(f"Rows {covered}-{top} were not captured")

        region = strip.image.crop((0, covered - top, width, bottom - top))
        canvas.paste(region, (0, covered))
        covered = bottom

    if covered < total_height:
        raise StitchError(f"Rows {covered}-{total_height} were not captured")
    return canvas
