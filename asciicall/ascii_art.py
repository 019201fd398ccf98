"""Conversion of camera frames to ASCII art and the compact wire form of that art."""

from __future__ import annotations

import numpy as np

ASCII_CHARS = " .,:;+*?%S#@"
_WIRE_ALPHABET = ASCII_CHARS + "\n"
_CHAR_TO_CODE = {ch: code for code, ch in enumerate(_WIRE_ALPHABET)}


def _axis_sampling(dst: int, src: int):
    """Source indices and weights for bilinear sampling with half-pixel centres."""
    scale = src / dst
    pos = (np.arange(dst, dtype=np.float64) + 0.5) * scale - 0.5
    pos = np.clip(pos, 0.0, src - 1)
    lo = np.floor(pos).astype(np.intp)
    hi = np.minimum(lo + 1, src - 1)
    return lo, hi, pos - lo


def _resize_linear(img: np.ndarray, width: int, height: int) -> np.ndarray:
    src_h, src_w = img.shape
    y_lo, y_hi, fy = _axis_sampling(height, src_h)
    x_lo, x_hi, fx = _axis_sampling(width, src_w)
    rows = img[y_lo] * (1.0 - fy)[:, None] + img[y_hi] * fy[:, None]
    out = rows[:, x_lo] * (1.0 - fx) + rows[:, x_hi] * fx
    return np.clip(np.rint(out), 0, 255).astype(np.uint8)


def _to_gray(frame: np.ndarray) -> np.ndarray:
    if frame.ndim == 2:
        return frame.astype(np.float64)
    if frame.ndim == 3 and frame.shape[2] >= 3:
        bgr = frame[:, :, :3].astype(np.float64)
        gray = 0.114 * bgr[:, :, 0] + 0.587 * bgr[:, :, 1] + 0.299 * bgr[:, :, 2]
        return np.clip(np.rint(gray), 0, 255)
    raise ValueError(f"unsupported frame shape {frame.shape}")


def _split_lines(text: str) -> list[str]:
    if not text:
        return []
    parts = text.split("\n")
    if text.endswith("\n"):
        parts.pop()
    return [p[:-1] if p.endswith("\r") else p for p in parts]


class AsciiConverter:
    """Renders frames as fixed-size ASCII art."""

    def __init__(self, width: int, height: int) -> None:
        if width <= 0 or height <= 0:
            raise ValueError("width and height must be positive")
        self.width = width
        self.height = height

    def frame_to_ascii(self, frame: np.ndarray) -> str:
        """Render a BGR (or grayscale) frame as mirrored ASCII art, one line per row."""
        frame = np.asarray(frame)
        if frame.size == 0:
            raise ValueError("empty frame")
        resized = _resize_linear(_to_gray(frame), self.width, self.height)
        mirrored = resized[:, ::-1].astype(np.intp)
        indices = mirrored * (len(ASCII_CHARS) - 1) // 255
        return "".join(
            "".join(ASCII_CHARS[i] for i in row) + "\n" for row in indices
        )

    @staticmethod
    def pack_frame(ascii: str) -> bytes:
        """Pack ASCII art two characters per byte; unknown characters become spaces."""
        codes = [_CHAR_TO_CODE.get(ch, 0) & 0x0F for ch in ascii]
        if len(codes) % 2:
            codes.append(0)
        return bytes((hi << 4) | lo for hi, lo in zip(codes[::2], codes[1::2]))

    @staticmethod
    def unpack_frame(data: bytes) -> str:
        """Expand packed ASCII art back to text."""

        def char(code: int) -> str:
            return _WIRE_ALPHABET[code] if code < len(_WIRE_ALPHABET) else " "

        return "".join(char(b >> 4) + char(b & 0x0F) for b in data)

    def merge_side_by_side(self, left: str, right: str, border: bool) -> str:
        """Place two ASCII frames next to each other, optionally framed."""
        lines1 = _split_lines(left)
        lines2 = _split_lines(right)
        width1 = max((len(line) for line in lines1), default=0)
        width2 = max((len(line) for line in lines2), default=0)
        rule = "+" + "-" * width1 + "+" + "-" * width2 + "+"

        parts = []
        if border:
            parts.append(rule + "\n")
        for i in range(max(len(lines1), len(lines2))):
            line1 = (lines1[i] if i < len(lines1) else "").ljust(width1)
            line2 = (lines2[i] if i < len(lines2) else "").ljust(width2)
            if border:
                parts.append(f"|{line1}|{line2}|\n")
            else:
                parts.append(f"{line1} {line2}\n")
        if border:
            parts.append(rule)
        return "".join(parts)