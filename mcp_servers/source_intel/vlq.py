"""Base64 VLQ codec for the source map `mappings` field.

Pure functions, no I/O. `decode` turns the delta-encoded mappings string into
absolute segments; `encode` is the inverse (used to build fixtures and to
re-emit flattened index maps).

Layout: generated lines are separated by `;`, segments within a line by `,`.
A segment holds 1, 4 or 5 VLQ fields:
generated column, source index, original line, original column, name index.
The generated column delta resets on every line; the other four deltas run
across the whole string.
"""

from __future__ import annotations

from typing import NamedTuple

_B64 = "ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789+/"
_B64_INDEX = {ch: i for i, ch in enumerate(_B64)}

_SHIFT = 5
_CONTINUATION = 1 << _SHIFT  # 0b100000
_MASK = _CONTINUATION - 1  # 0b011111


class VlqDecodeError(ValueError):
    pass


class Segment(NamedTuple):
    generated_line: int
    generated_column: int
    source_index: int | None = None
    original_line: int | None = None
    original_column: int | None = None
    name_index: int | None = None

    @property
    def has_original(self) -> bool:
        return self.source_index is not None and self.original_line is not None


def decode_values(text: str) -> list[int]:
    """Decode one segment (a run of VLQ digits) into signed integers."""
    values: list[int] = []
    shift = 0
    acc = 0
    for ch in text:
        digit = _B64_INDEX.get(ch)
        if digit is None:
            raise VlqDecodeError(f"invalid base64 VLQ character {ch!r}")
        acc += (digit & _MASK) << shift
        if digit & _CONTINUATION:
            shift += _SHIFT
            continue
        negative = acc & 1
        acc >>= 1
        values.append(-acc if negative else acc)
        shift = 0
        acc = 0
    if shift:
        raise VlqDecodeError(f"truncated VLQ value in {text!r}")
    return values


def encode_value(value: int) -> str:
    vlq = (-value << 1) | 1 if value < 0 else value << 1
    out = []
    while True:
        digit = vlq & _MASK
        vlq >>= _SHIFT
        if vlq:
            digit |= _CONTINUATION
        out.append(_B64[digit])
        if not vlq:
            return "".join(out)


def encode_values(values: list[int] | tuple[int, ...]) -> str:
    return "".join(encode_value(v) for v in values)


def decode(mappings: str) -> list[Segment]:
    """Decode a mappings string into absolute segments, in string order."""
    segments: list[Segment] = []
    if not mappings:
        return segments

    source_index = 0
    original_line = 0
    original_column = 0
    name_index = 0

    for generated_line, line in enumerate(mappings.split(";")):
        generated_column = 0
        if not line:
            continue
        for raw in line.split(","):
            if not raw:
                continue
            fields = decode_values(raw)
            if len(fields) not in (1, 4, 5):
                raise VlqDecodeError(f"invalid segment with {len(fields)} fields: {raw!r}")

            generated_column += fields[0]
            if generated_column < 0:
                raise VlqDecodeError(f"negative generated column on line {generated_line}")
            if len(fields) == 1:
                segments.append(Segment(generated_line, generated_column))
                continue

            source_index += fields[1]
            original_line += fields[2]
            original_column += fields[3]
            if source_index < 0 or original_line < 0 or original_column < 0:
                raise VlqDecodeError(f"negative original position on line {generated_line}")

            name: int | None = None
            if len(fields) == 5:
                name_index += fields[4]
                if name_index < 0:
                    raise VlqDecodeError(f"negative name index on line {generated_line}")
                name = name_index

            segments.append(
                Segment(generated_line, generated_column, source_index, original_line, original_column, name)
            )
    return segments


def encode(segments: list[Segment] | tuple[Segment, ...]) -> str:
    """Encode absolute segments back into a mappings string."""
    if not segments:
        return ""
    ordered = sorted(segments, key=lambda s: (s.generated_line, s.generated_column))

    source_index = 0
    original_line = 0
    original_column = 0
    name_index = 0

    lines: list[str] = []
    current: list[str] = []
    line_no = 0
    generated_column = 0

    for seg in ordered:
        while line_no < seg.generated_line:
            lines.append(",".join(current))
            current = []
            line_no += 1
            generated_column = 0

        fields = [seg.generated_column - generated_column]
        generated_column = seg.generated_column
        if seg.has_original:
            fields += [
                int(seg.source_index) - source_index,  # type: ignore[arg-type]
                int(seg.original_line) - original_line,  # type: ignore[arg-type]
                int(seg.original_column or 0) - original_column,
            ]
            source_index = int(seg.source_index)  # type: ignore[arg-type]
            original_line = int(seg.original_line)  # type: ignore[arg-type]
            original_column = int(seg.original_column or 0)
            if seg.name_index is not None:
                fields.append(seg.name_index - name_index)
                name_index = seg.name_index
        current.append(encode_values(fields))

    lines.append(",".join(current))
    return ";".join(lines)
