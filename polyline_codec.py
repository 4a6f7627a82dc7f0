"""
Encoded polyline format (1e5 precision) shared by routing and map providers.

Each coordinate is written as the delta from the previous point, zig-zag
transformed, and emitted in 5-bit little-endian groups offset by 63.
"""

from typing import Iterable, List

from search_models import Coordinate, MalformedResponse

PRECISION = 1e5


def _encode_value(value: int) -> str:
    value = ~(value << 1) if value < 0 else (value << 1)
    chunks = []
    while value >= 0x20:
        chunks.append(chr((0x20 | (value & 0x1F)) + 63))
        value >>= 5
    chunks.append(chr(value + 63))
    return "".join(chunks)


def encode(points: Iterable[Coordinate]) -> str:
    """Encode coordinates into a polyline string."""
    out = []
    prev_lat = 0
    prev_lng = 0
    for point in points:
        lat = int(round(point.latitude * PRECISION))
        lng = int(round(point.longitude * PRECISION))
        out.append(_encode_value(lat - prev_lat))
        out.append(_encode_value(lng - prev_lng))
        prev_lat, prev_lng = lat, lng
    return "".join(out)


def _decode_value(encoded: str, index: int):
    result = 0
    shift = 0
    while True:
        if index >= len(encoded):
            raise MalformedResponse(f"Truncated polyline at offset {index}")
        byte = ord(encoded[index]) - 63
        index += 1
        if byte < 0 or byte > 0x3F:
            raise MalformedResponse(f"Invalid polyline character at offset {index - 1}")
        result |= (byte & 0x1F) << shift
        shift += 5
        if byte < 0x20:
            break
    delta = ~(result >> 1) if result & 1 else (result >> 1)
    return delta, index


def decode(encoded: str) -> List[Coordinate]:
    """Decode a polyline string into coordinates.

    Raises MalformedResponse when the string ends mid-value or contains
    characters outside the encoding alphabet.
    """
    points: List[Coordinate] = []
    index = 0
    lat = 0
    lng = 0
    while index < len(encoded):
        dlat, index = _decode_value(encoded, index)
        dlng, index = _decode_value(encoded, index)
        lat += dlat
        lng += dlng
        points.append(Coordinate(lat / PRECISION, lng / PRECISION))
    return points
