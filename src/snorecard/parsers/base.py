"""
Decoder errors.

Decoders stop at the last well-formed point instead of raising; ParserError is
reserved for conditions that make a whole file undecodable. It never escapes
``decode_file``.
"""


class ParserError(Exception):
    """Raised when a file cannot be decoded at all."""

    def __init__(self, message: str, parser: str | None = None):
        super().__init__(message)
        self.parser = parser

    def __str__(self) -> str:
        message = super().__str__()
        return f"[{self.parser}] {message}" if self.parser else message
