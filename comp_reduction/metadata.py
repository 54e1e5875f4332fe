"""Access to required FITS header keywords."""

from .errors import MissingMetadata


def header_value(header, key, kind=float):
    """
    Read and convert a required header keyword.

    Raises
    ------
    MissingMetadata
        If the keyword is absent or cannot be converted with ``kind``.
    """
    try:
        value = header[key]
    except KeyError:
        raise MissingMetadata(f"Missing header keyword {key}") from None
    try:
        return kind(value)
    except (TypeError, ValueError):
        raise MissingMetadata(f"Malformed header keyword {key}: {value!r}") from None
