"""Conversion between the bookmark tree and its Markdown form."""

from .markdown import EMPTY_HEADER, decode, decode_result, encode

__all__ = [
    "EMPTY_HEADER",
    "decode",
    "decode_result",
    "encode",
]
