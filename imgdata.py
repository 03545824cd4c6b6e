#!/usr/bin/env python3
"""Utility helpers for listing, extracting and rebuilding Android imgdata images.

The imgdata partition found on some Android bootloaders (the LG Nexus 5 being
the best known example) bundles the splash screens and boot-time graphics into
a single container.  A fixed header is followed by a table of metadata records
and a content region starting at offset 1024.  Every image is stored as a
sequence of 4-byte pixel runs ``(count, red, green, blue)`` padded with zeros
to a multiple of 512 bytes.

Five modes are provided:

```
python imgdata.py -l <imgdata.img>
python imgdata.py -x <imgdata.img> [-o <output_dir>]
python imgdata.py -u <imgdata.img> <name:X[:Y[:W[:H]]]> [...]
python imgdata.py -r <imgdata.img> <name.png[:X[:Y]]> [...]
python imgdata.py -c <imgdata.img> <name.png[:X[:Y]]> [...]
```

*list* prints the header and the metadata table.  *extract* converts every
entry into ``<name>.png``.  *update* only touches metadata; *replace* swaps the
pixels of existing entries for the contents of PNG files and *create* builds a
brand new container (overwriting any existing file).  Whenever the size of an
entry changes, every following entry moves by the difference in 512 byte
blocks so that the content region stays contiguous.
"""

from __future__ import annotations

import argparse
import dataclasses
import io
import logging
import os
import re
import struct
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO, Dict, Iterable, List, NamedTuple, Sequence, Tuple, Union

from PIL import Image, UnidentifiedImageError

LOGGER = logging.getLogger("imgdata")

MAGIC = b"IMGDATA!"
FORMAT_VERSION = 1
BLOCK_SIZE = 512
NAME_FIELD_SIZE = 16
CONTENT_START = 1024
MAX_RUN_LENGTH = 255
MAX_FIELD_VALUE = 0xFFFFFFFF

HEADER_STRUCT = struct.Struct("<8sIIII")  # magic, version, entry count, reserved, reserved
ENTRY_STRUCT = struct.Struct("<16sIIIIII")  # name, width, height, x, y, offset, size
PIXEL_RUN_STRUCT = struct.Struct("<BBBB")  # count, red, green, blue

# The metadata table has to end before the content region starts.
MAX_ENTRIES = (CONTENT_START - HEADER_STRUCT.size) // ENTRY_STRUCT.size

# Token fields: 0x<hex>, 0<octal> or decimal, nothing else.
NUMBER_PATTERN = re.compile(r"\A(?:0[xX][0-9a-fA-F]+|0[0-7]*|[1-9][0-9]*)\Z")

PNG_SIGNATURE = b"\x89PNG\r\n\x1a\n"
PNG_CHUNK_HEADER = struct.Struct(">I4s")  # length, type
WIDE_GREY_MODES = ("I", "I;16", "I;16L", "I;16B")

PNG_COMPRESS_LEVEL = int(os.environ.get("IMGDATA_PNG_COMPRESS_LEVEL", 6))


class ImgDataError(RuntimeError):
    """Base class for every error raised while handling an imgdata container."""


class InvalidMagic(ImgDataError):
    """Raised when the header does not start with ``IMGDATA!``."""


class ContainerIOError(ImgDataError):
    """Raised when reading, seeking or writing the backing stream fails."""


class TruncatedPayload(ContainerIOError):
    """Raised when the stream ends before the requested bytes."""


class MalformedPayload(ImgDataError):
    """Raised when pixel runs do not reconstruct the declared image."""


class NameTooLong(ImgDataError):
    """Raised when an entry name does not fit the 16 byte name field."""


class OffsetComputationError(ImgDataError):
    """Raised when the entry layout cannot be (re)computed consistently."""


class UnsupportedPngFormat(ImgDataError):
    """Raised when a source image cannot be decoded as PNG."""


class InvalidToken(ImgDataError):
    """Raised when a command line token cannot be parsed."""


@dataclass(frozen=True)
class EntryName:
    """Raw 16 byte name field.

    The field is not guaranteed to be NUL terminated; every accessor bounds
    itself by the field width.  Bytes following the terminator are kept so
    that an untouched table is written back byte for byte.
    """

    raw: bytes

    def __post_init__(self) -> None:
        if len(self.raw) != NAME_FIELD_SIZE:
            raise ValueError(f"name field must be exactly {NAME_FIELD_SIZE} bytes")

    @classmethod
    def from_text(cls, text: str) -> "EntryName":
        encoded = text.encode("utf-8")
        if len(encoded) > NAME_FIELD_SIZE:
            raise NameTooLong(
                f"name {text!r} is longer than {NAME_FIELD_SIZE} bytes"
            )
        if b"\x00" in encoded:
            raise InvalidToken(f"name {text!r} contains a NUL byte")
        return cls(encoded.ljust(NAME_FIELD_SIZE, b"\x00"))

    @property
    def length(self) -> int:
        terminator = self.raw.find(b"\x00", 0, NAME_FIELD_SIZE)
        return NAME_FIELD_SIZE if terminator < 0 else terminator

    @property
    def value(self) -> bytes:
        return self.raw[: self.length]

    @property
    def text(self) -> str:
        try:
            return self.value.decode("utf-8")
        except UnicodeDecodeError:
            return self.value.decode("latin-1")

    def matches(self, name: Union[str, bytes, "EntryName"]) -> bool:
        """Return True if *name* equals the logical part of this field."""

        if isinstance(name, EntryName):
            other = name.value
        elif isinstance(name, str):
            other = name.encode("utf-8")
        else:
            other = bytes(name)
        return self.value == other

    def __str__(self) -> str:
        return self.text


@dataclass
class ContainerHeader:
    magic: bytes = MAGIC
    version: int = FORMAT_VERSION
    "Undocumented upstream; kept as an opaque value."

    entry_count: int = 0
    reserved_a: int = 0
    reserved_b: int = 0


@dataclass
class EntryMetadata:
    name: EntryName
    width: int = 0
    height: int = 0
    x: int = 0
    y: int = 0
    offset: int = CONTENT_START
    "Absolute position of the payload, always a multiple of BLOCK_SIZE."

    size: int = 0
    "Logical payload size: number of pixel runs times four."

    @property
    def block_size(self) -> int:
        return aligned_size(self.size)


class PixelRun(NamedTuple):
    count: int
    red: int
    green: int
    blue: int


@dataclass
class UpdateRequest:
    """Sparse change to the entries called *name*.

    Fields left as ``None`` are not touched.  *payload* holds the logical
    pixel run bytes of a replacement image, *source* the PNG it comes from.
    """

    name: str
    x: int | None = None
    y: int | None = None
    width: int | None = None
    height: int | None = None
    size: int | None = None
    payload: bytes | None = None
    source: Path | None = None


def block_count(size: int) -> int:
    """Return the number of 512 byte blocks needed for *size* bytes."""

    if size <= 0:
        return 0
    return (size + BLOCK_SIZE - 1) // BLOCK_SIZE


def aligned_size(size: int) -> int:
    return block_count(size) * BLOCK_SIZE


def pad_to_block(data: bytes) -> bytes:
    """Zero-fill *data* up to the next block boundary."""

    padding = aligned_size(len(data)) - len(data)
    return bytes(data) + b"\x00" * padding


def encode_pixel_runs(pixels: bytes, width: int, height: int) -> List[PixelRun]:
    """Run-length encode packed row-major RGB data.

    A run is closed whenever the colour changes or it already covers
    ``MAX_RUN_LENGTH`` pixels, which yields the smallest possible number of
    runs under that cap.
    """

    expected = width * height * 3
    if len(pixels) != expected:
        raise MalformedPayload(
            f"expected {expected} bytes of RGB data for a {width}x{height} image, got {len(pixels)}"
        )

    runs: List[PixelRun] = []
    if not expected:
        return runs

    red, green, blue = pixels[0], pixels[1], pixels[2]
    count = 0
    for cursor in range(0, expected, 3):
        r, g, b = pixels[cursor], pixels[cursor + 1], pixels[cursor + 2]
        if count < MAX_RUN_LENGTH and r == red and g == green and b == blue:
            count += 1
            continue
        runs.append(PixelRun(count, red, green, blue))
        red, green, blue = r, g, b
        count = 1
    runs.append(PixelRun(count, red, green, blue))
    return runs


def decode_pixel_runs(runs: Iterable[PixelRun], width: int, height: int) -> bytes:
    """Expand *runs* into packed row-major RGB data of exactly width*height pixels."""

    expected = width * height
    produced = 0
    output = bytearray()
    for index, run in enumerate(runs):
        if not 1 <= run.count <= MAX_RUN_LENGTH:
            raise MalformedPayload(f"pixel run {index} has an invalid count of {run.count}")
        produced += run.count
        if produced > expected:
            raise MalformedPayload(
                f"pixel runs describe more than the {expected} pixels of a {width}x{height} image"
            )
        output.extend(bytes((run.red, run.green, run.blue)) * run.count)

    if produced != expected:
        raise MalformedPayload(
            f"pixel runs describe {produced} pixels, a {width}x{height} image needs {expected}"
        )
    return bytes(output)


def pack_pixel_runs(runs: Iterable[PixelRun]) -> bytes:
    packed = bytearray()
    for run in runs:
        if not 1 <= run.count <= MAX_RUN_LENGTH:
            raise MalformedPayload(f"cannot store a pixel run with count {run.count}")
        packed.extend(PIXEL_RUN_STRUCT.pack(*run))
    return bytes(packed)


def unpack_pixel_runs(data: bytes) -> List[PixelRun]:
    """Split the logical part of a payload into pixel runs."""

    if len(data) % PIXEL_RUN_STRUCT.size:
        raise MalformedPayload("payload ends in the middle of a pixel run record")

    runs = [PixelRun(*fields) for fields in PIXEL_RUN_STRUCT.iter_unpack(data)]
    for index, run in enumerate(runs):
        if run.count == 0:
            raise MalformedPayload(f"pixel run {index} has a repeat count of zero")
    return runs


def decode_entry_payload(entry: EntryMetadata, payload: bytes) -> bytes:
    """Return the RGB pixels stored in *payload* for *entry*."""

    if len(payload) < entry.size:
        raise TruncatedPayload(
            f"{entry.name}: payload holds {len(payload)} bytes, table declares {entry.size}"
        )
    runs = unpack_pixel_runs(payload[: entry.size])
    return decode_pixel_runs(runs, entry.width, entry.height)


def parse_header(data: bytes) -> ContainerHeader:
    if data[: len(MAGIC)] != MAGIC:
        raise InvalidMagic("not an imgdata container (magic does not match IMGDATA!)")
    if len(data) < HEADER_STRUCT.size:
        raise TruncatedPayload("truncated imgdata header")

    magic, version, entry_count, reserved_a, reserved_b = HEADER_STRUCT.unpack_from(data, 0)
    if entry_count > MAX_ENTRIES:
        raise ImgDataError(
            f"header declares {entry_count} entries, at most {MAX_ENTRIES} fit before the content region"
        )
    return ContainerHeader(magic, version, entry_count, reserved_a, reserved_b)


def parse_table(data: bytes, entry_count: int) -> List[EntryMetadata]:
    expected = entry_count * ENTRY_STRUCT.size
    if len(data) < expected:
        raise TruncatedPayload(
            f"metadata table needs {expected} bytes for {entry_count} entries, found {len(data)}"
        )

    entries: List[EntryMetadata] = []
    for index in range(entry_count):
        name, width, height, x, y, offset, size = ENTRY_STRUCT.unpack_from(
            data, index * ENTRY_STRUCT.size
        )
        entries.append(EntryMetadata(EntryName(name), width, height, x, y, offset, size))
    return entries


def parse_container(
    header_bytes: bytes, table_bytes: bytes
) -> Tuple[ContainerHeader, List[EntryMetadata]]:
    """Parse the header and the metadata table that follows it.

    Only the structure is validated here; offsets and sizes are checked by
    :func:`check_layout` when a write is about to happen.
    """

    header = parse_header(header_bytes)
    return header, parse_table(table_bytes, header.entry_count)


def serialize_container(header: ContainerHeader, entries: Sequence[EntryMetadata]) -> bytes:
    """Return the header followed by the metadata table."""

    if len(entries) > MAX_ENTRIES:
        raise OffsetComputationError(
            f"{len(entries)} entries do not fit before the content region (max {MAX_ENTRIES})"
        )

    buffer = bytearray()
    try:
        buffer.extend(
            HEADER_STRUCT.pack(
                header.magic,
                header.version,
                len(entries),
                header.reserved_a,
                header.reserved_b,
            )
        )
        for entry in entries:
            buffer.extend(
                ENTRY_STRUCT.pack(
                    entry.name.raw,
                    entry.width,
                    entry.height,
                    entry.x,
                    entry.y,
                    entry.offset,
                    entry.size,
                )
            )
    except struct.error as exc:
        raise ImgDataError(f"metadata value does not fit in its 32-bit field: {exc}") from exc
    return bytes(buffer)


def _apply_fields(entry: EntryMetadata, request: UpdateRequest) -> None:
    if request.x is not None:
        entry.x = request.x
    if request.y is not None:
        entry.y = request.y
    if request.width is not None:
        entry.width = request.width
    if request.height is not None:
        entry.height = request.height


def apply_update(entries: Sequence[EntryMetadata], request: UpdateRequest) -> List[int]:
    """Apply the position and dimension fields of *request* in place.

    Returns the indices of the matching entries; an unknown name matches
    nothing and leaves the table untouched.  Size changes are not applied
    here because moving the following entries requires the previous size,
    see :func:`reconcile_offsets`.
    """

    matched: List[int] = []
    for index, entry in enumerate(entries):
        if not entry.name.matches(request.name):
            continue
        _apply_fields(entry, request)
        matched.append(index)
    return matched


def reconcile_offsets(
    entries: Sequence[EntryMetadata], size_changes: Dict[int, int]
) -> List[EntryMetadata]:
    """Return copies of *entries* with new sizes and shifted offsets.

    *size_changes* maps table indices to new logical sizes.  A single forward
    pass keeps a running shift: every entry first moves by the growth of the
    entries before it, then its own change in block count is added to the
    shift.  The input is left untouched when an error is raised.
    """

    unknown = sorted(index for index in size_changes if not 0 <= index < len(entries))
    if unknown:
        raise OffsetComputationError(f"size change requested for unknown entries {unknown}")

    reconciled: List[EntryMetadata] = []
    shift = 0
    for index, entry in enumerate(entries):
        new_offset = entry.offset + shift
        if new_offset < CONTENT_START:
            raise OffsetComputationError(
                f"{entry.name}: offset {new_offset} lies before the content region"
            )

        new_size = entry.size
        if index in size_changes:
            new_size = size_changes[index]
            if not 0 <= new_size <= MAX_FIELD_VALUE:
                raise OffsetComputationError(f"{entry.name}: invalid size {new_size}")
            shift += (block_count(new_size) - block_count(entry.size)) * BLOCK_SIZE

        if new_offset + aligned_size(new_size) > MAX_FIELD_VALUE + 1:
            raise OffsetComputationError(
                f"{entry.name}: payload would end beyond the 32-bit addressable range"
            )
        reconciled.append(dataclasses.replace(entry, offset=new_offset, size=new_size))
    return reconciled


def check_layout(entries: Sequence[EntryMetadata]) -> None:
    """Raise OffsetComputationError unless the entries can be written as is."""

    if len(entries) > MAX_ENTRIES:
        raise OffsetComputationError(
            f"{len(entries)} entries do not fit before the content region (max {MAX_ENTRIES})"
        )

    position = CONTENT_START
    for index, entry in enumerate(entries):
        if entry.offset % BLOCK_SIZE:
            raise OffsetComputationError(
                f"{entry.name}: offset {entry.offset} is not a multiple of {BLOCK_SIZE}"
            )
        if index == 0 and entry.offset != CONTENT_START:
            raise OffsetComputationError(
                f"{entry.name}: first entry starts at {entry.offset} instead of {CONTENT_START}"
            )
        if entry.offset < position:
            raise OffsetComputationError(
                f"{entry.name}: offset {entry.offset} overlaps the previous entry ending at {position}"
            )
        position = entry.offset + entry.block_size


def read_header_and_table(stream: BinaryIO) -> Tuple[ContainerHeader, List[EntryMetadata]]:
    try:
        stream.seek(0)
        header_bytes = stream.read(HEADER_STRUCT.size)
        header = parse_header(header_bytes)
        table_bytes = stream.read(header.entry_count * ENTRY_STRUCT.size)
    except OSError as exc:
        raise ContainerIOError(f"unable to read the container header: {exc}") from exc
    return header, parse_table(table_bytes, header.entry_count)


def read_payload(stream: BinaryIO, entry: EntryMetadata) -> bytes:
    """Return the block-aligned payload stored for *entry*."""

    length = entry.block_size
    try:
        stream.seek(entry.offset)
        payload = stream.read(length)
    except OSError as exc:
        raise ContainerIOError(f"unable to read {entry.name}: {exc}") from exc
    if len(payload) < length:
        raise TruncatedPayload(
            f"{entry.name}: expected {length} bytes at offset {entry.offset}, found {len(payload)}"
        )
    return payload


def _write_at(stream: BinaryIO, offset: int, data: bytes) -> None:
    try:
        stream.seek(offset)
        written = stream.write(data)
    except OSError as exc:
        raise ContainerIOError(f"unable to write {len(data)} bytes at offset {offset}: {exc}") from exc
    if written is not None and written != len(data):
        raise ContainerIOError(
            f"short write at offset {offset}: {written} of {len(data)} bytes written"
        )


def write_header_and_table(
    stream: BinaryIO, header: ContainerHeader, entries: Sequence[EntryMetadata]
) -> None:
    _write_at(stream, 0, serialize_container(header, entries))


def write_payloads(
    stream: BinaryIO, entries: Sequence[EntryMetadata], payloads: Sequence[bytes]
) -> int:
    """Write the payloads in table order and truncate the stream behind them.

    Payloads shorter than their block-aligned size are zero padded.  Gaps
    between entries are zero filled.  Returns the new length of the stream.
    """

    if len(entries) != len(payloads):
        raise ValueError("every entry needs exactly one payload")

    position = CONTENT_START
    for entry, payload in zip(entries, payloads):
        block = pad_to_block(payload)
        if len(block) != entry.block_size:
            raise OffsetComputationError(
                f"{entry.name}: payload spans {len(block)} bytes, table declares {entry.block_size}"
            )
        if entry.offset < position:
            raise OffsetComputationError(
                f"{entry.name}: offset {entry.offset} overlaps data already written up to {position}"
            )
        if entry.offset > position:
            _write_at(stream, position, b"\x00" * (entry.offset - position))
        _write_at(stream, entry.offset, block)
        position = entry.offset + len(block)

    try:
        # Nothing written past the new end may survive a shrink.
        stream.truncate(position)
        stream.flush()
    except OSError as exc:
        raise ContainerIOError(f"unable to truncate the container to {position} bytes: {exc}") from exc
    return position


def _png_chunks(data: bytes) -> Iterable[Tuple[bytes, bytes]]:
    position = len(PNG_SIGNATURE)
    while position + PNG_CHUNK_HEADER.size <= len(data):
        length, kind = PNG_CHUNK_HEADER.unpack_from(data, position)
        start = position + PNG_CHUNK_HEADER.size
        yield kind, data[start:start + length]
        # Skip the CRC.
        position = start + length + 4


def _scale_sample(value: int, depth: int) -> int:
    if depth == 16:
        return value >> 8
    if depth == 8:
        return value & 0xFF
    return min(255, value * 255 // ((1 << depth) - 1))


def png_background(data: bytes) -> Tuple[int, int, int]:
    """Return the ``bKGD`` colour of the PNG in *data* as 8-bit RGB.

    Pillow does not decode ``bKGD``, so the chunks are walked directly.
    Black is returned when the chunk is missing or cannot be interpreted.
    """

    depth = colour_type = None
    palette = b""
    for kind, chunk in _png_chunks(data):
        if kind == b"IHDR" and len(chunk) >= 13:
            depth, colour_type = chunk[8], chunk[9]
        elif kind == b"PLTE":
            palette = chunk
        elif kind == b"bKGD" and depth is not None:
            if colour_type == 3 and len(chunk) >= 1 and 3 * chunk[0] + 3 <= len(palette):
                red, green, blue = palette[3 * chunk[0]:3 * chunk[0] + 3]
                return red, green, blue
            if colour_type in (0, 4) and len(chunk) >= 2:
                grey = _scale_sample(struct.unpack(">H", chunk[:2])[0], depth)
                return grey, grey, grey
            if colour_type in (2, 6) and len(chunk) >= 6:
                red, green, blue = (_scale_sample(value, depth) for value in struct.unpack(">HHH", chunk[:6]))
                return red, green, blue
            LOGGER.debug("ignoring malformed bKGD chunk (colour type %s, %d bytes)", colour_type, len(chunk))
            break
        elif kind in (b"IDAT", b"IEND"):
            break
    return 0, 0, 0


def _reduce_wide_grey(image: Image.Image) -> Image.Image:
    """Keep the most significant byte of 16-bit greyscale samples."""

    if image.mode == "I":
        return image.point(lambda value: value * (1 / 256)).convert("L")
    raw = image.tobytes()
    high = raw[0::2] if image.mode == "I;16B" else raw[1::2]
    return Image.frombytes("L", image.size, high)


def load_png(path: Path) -> Tuple[bytes, int, int]:
    """Return ``(rgb_bytes, width, height)`` for the PNG at *path*.

    Transparent pixels are composited over the ``bKGD`` colour, or black
    when the file has none.  16-bit samples keep their high byte.
    """

    try:
        data = path.read_bytes()
        with Image.open(io.BytesIO(data)) as image:
            if image.format != "PNG":
                raise UnsupportedPngFormat(f"{path} is not a PNG file ({image.format})")
            if image.mode in WIDE_GREY_MODES:
                image = _reduce_wide_grey(image)
            rgba = image.convert("RGBA")
    except (UnidentifiedImageError, OSError, ValueError) as exc:
        raise UnsupportedPngFormat(f"unable to decode {path}: {exc}") from exc

    background = Image.new("RGB", rgba.size, png_background(data))
    background.paste(rgba, mask=rgba.getchannel("A"))
    width, height = background.size
    return background.tobytes(), width, height


def save_png(path: Path, pixels: bytes, width: int, height: int) -> None:
    image = Image.frombytes("RGB", (width, height), pixels)
    try:
        image.save(path, format="PNG", compress_level=PNG_COMPRESS_LEVEL)
    except OSError as exc:
        raise ContainerIOError(f"unable to write {path}: {exc}") from exc


def entry_name_for(filename: str) -> str:
    """Return the entry name for *filename*: its base name without extension."""

    base = filename.replace("\\", "/").rsplit("/", 1)[-1]
    stem, dot, _extension = base.rpartition(".")
    if dot and stem:
        return stem
    return base


def _parse_field(text: str) -> int | None:
    # A field starting with "-" keeps the stored value, whatever follows.
    if not text or text.startswith("-"):
        return None
    if not NUMBER_PATTERN.match(text):
        raise InvalidToken(f"{text!r} is not a valid number")

    if text[:2].lower() == "0x":
        value = int(text, 16)
    elif text.startswith("0"):
        value = int(text, 8)
    else:
        value = int(text, 10)

    if value > MAX_FIELD_VALUE:
        raise InvalidToken(f"{text!r} does not fit in an unsigned 32-bit field")
    return value


def _split_token(token: str, max_fields: int) -> Tuple[str, List[int | None]]:
    filename, *fields = token.split(":")
    if not filename:
        raise InvalidToken(f"{token!r} does not start with a name")
    if len(fields) > max_fields:
        raise InvalidToken(f"{token!r} has more than {max_fields} value(s) after the name")

    # Validates the length of the name before anything else is parsed.
    EntryName.from_text(entry_name_for(filename))

    values = [_parse_field(field) for field in fields]
    values.extend([None] * (4 - len(values)))
    return filename, values


def parse_update_token(token: str) -> UpdateRequest:
    """Parse ``name[:x[:y[:w[:h]]]]``; ``-`` keeps the stored value."""

    filename, (x, y, width, height) = _split_token(token, 4)
    return UpdateRequest(entry_name_for(filename), x=x, y=y, width=width, height=height)


def parse_image_token(token: str) -> UpdateRequest:
    """Parse ``file.png[:x[:y]]`` as used by replace and create."""

    filename, (x, y, _width, _height) = _split_token(token, 2)
    return UpdateRequest(entry_name_for(filename), x=x, y=y, source=Path(filename))


def _prepare_image(request: UpdateRequest) -> UpdateRequest:
    """Return *request* completed with the encoded payload and its dimensions."""

    if request.payload is not None:
        size = len(request.payload) if request.size is None else request.size
        return dataclasses.replace(request, size=size)

    if request.source is None:
        raise InvalidToken(f"{request.name}: no image given")

    pixels, width, height = load_png(request.source)
    payload = pack_pixel_runs(encode_pixel_runs(pixels, width, height))
    LOGGER.debug(
        "%s: %dx%d encoded into %d pixel runs", request.source, width, height, len(payload) // 4
    )
    return dataclasses.replace(
        request, width=width, height=height, size=len(payload), payload=payload
    )


def _open_container(path: Path, mode: str) -> BinaryIO:
    try:
        return path.open(mode)
    except OSError as exc:
        raise ContainerIOError(f"unable to open {path}: {exc}") from exc


def _safe_filename(name: str) -> str:
    return name.replace("/", "_").replace("\\", "_")


@dataclass(frozen=True)
class ListOperation:
    container: Path


@dataclass(frozen=True)
class ExtractOperation:
    container: Path
    output_dir: Path = Path(".")


@dataclass(frozen=True)
class UpdateOperation:
    container: Path
    requests: Tuple[UpdateRequest, ...]


@dataclass(frozen=True)
class ReplaceOperation:
    container: Path
    requests: Tuple[UpdateRequest, ...]


@dataclass(frozen=True)
class CreateOperation:
    container: Path
    requests: Tuple[UpdateRequest, ...]


Operation = Union[ListOperation, ExtractOperation, UpdateOperation, ReplaceOperation, CreateOperation]


def list_container(path: Path) -> Tuple[ContainerHeader, List[EntryMetadata]]:
    with _open_container(path, "rb") as stream:
        return read_header_and_table(stream)


def format_listing(header: ContainerHeader, entries: Sequence[EntryMetadata]) -> List[str]:
    """Return printable lines describing the header and the metadata table."""

    lines = [
        f"magic: {header.magic.decode('latin-1')}",
        f"unknown: {header.version}",
        f"num_files: {header.entry_count}",
        f"padding_a: {header.reserved_a}",
        f"padding_b: {header.reserved_b}",
        f"{'':27}\twidth\theight\tx-pos\ty-pos\toffset\tsize",
    ]
    for index, entry in enumerate(entries):
        lines.append(
            f"File {index:02d} = {entry.name.text:>16}:\t{entry.width}\t{entry.height}\t"
            f"{entry.x}\t{entry.y}\t{entry.offset}\t{entry.size}"
        )
    return lines


def extract_container(path: Path, output_dir: Path) -> List[Path]:
    """Convert every entry of the container into ``<name>.png`` inside *output_dir*.

    Entries whose pixel runs are malformed, or that have no pixels at all,
    are reported and skipped.
    """

    written: List[Path] = []
    with _open_container(path, "rb") as stream:
        _header, entries = read_header_and_table(stream)
        output_dir.mkdir(parents=True, exist_ok=True)

        for index, entry in enumerate(entries):
            name = entry.name.text or f"entry{index:02d}"
            if not entry.width or not entry.height:
                LOGGER.warning("%s is an empty image, skipping", name)
                continue

            payload = read_payload(stream, entry)
            try:
                pixels = decode_entry_payload(entry, payload)
            except MalformedPayload as exc:
                LOGGER.warning("unable to decode %s, skipping: %s", name, exc)
                continue

            target = output_dir / f"{_safe_filename(name)}.png"
            save_png(target, pixels, entry.width, entry.height)
            LOGGER.info("%s", target)
            written.append(target)
    return written


def update_container(path: Path, requests: Sequence[UpdateRequest]) -> List[str]:
    """Rewrite the metadata table only; payload bytes are never moved.

    A size override shifts the offsets of the following entries in the table
    without touching the content region, so the caller is responsible for
    keeping metadata and payloads in agreement.
    """

    updated: List[str] = []
    with _open_container(path, "r+b") as stream:
        header, entries = read_header_and_table(stream)

        size_changes: Dict[int, int] = {}
        for request in requests:
            matched = apply_update(entries, request)
            if not matched:
                LOGGER.warning("%s not found in %s, skipping", request.name, path.name)
                continue
            if request.size is not None:
                for index in matched:
                    size_changes[index] = request.size
            updated.append(request.name)

        if size_changes:
            entries = reconcile_offsets(entries, size_changes)
        write_header_and_table(stream, header, entries)
    return updated


def replace_container(path: Path, requests: Sequence[UpdateRequest]) -> List[str]:
    """Replace the pixels of existing entries and move everything after them."""

    replaced: List[str] = []
    with _open_container(path, "r+b") as stream:
        header, entries = read_header_and_table(stream)

        replacements: Dict[int, bytes] = {}
        size_changes: Dict[int, int] = {}
        for request in requests:
            if not any(entry.name.matches(request.name) for entry in entries):
                LOGGER.warning("%s not found in %s, skipping", request.name, path.name)
                continue
            try:
                prepared = _prepare_image(request)
            except (UnsupportedPngFormat, InvalidToken, MalformedPayload) as exc:
                LOGGER.warning("%s, skipping", exc)
                continue

            for index in apply_update(entries, prepared):
                replacements[index] = prepared.payload
                size_changes[index] = prepared.size
            replaced.append(prepared.name)

        if not replacements:
            LOGGER.warning("nothing to replace in %s", path.name)
            return replaced

        # Untouched payloads are copied verbatim, read before any offset moves.
        payloads = [
            replacements[index] if index in replacements else read_payload(stream, entry)
            for index, entry in enumerate(entries)
        ]
        entries = reconcile_offsets(entries, size_changes)
        check_layout(entries)

        write_header_and_table(stream, header, entries)
        write_payloads(stream, entries, payloads)
    return replaced


def create_container(path: Path, requests: Sequence[UpdateRequest]) -> List[str]:
    """Build a new container from *requests*, overwriting *path*."""

    prepared: List[UpdateRequest] = []
    entries: List[EntryMetadata] = []
    for request in requests:
        try:
            entry = EntryMetadata(EntryName.from_text(request.name))
            item = _prepare_image(request)
        except (UnsupportedPngFormat, InvalidToken, MalformedPayload, NameTooLong) as exc:
            LOGGER.warning("%s, skipping", exc)
            continue
        _apply_fields(entry, item)
        prepared.append(item)
        entries.append(entry)

    if not prepared:
        raise ImgDataError(f"no usable images, {path} was not written")

    # Every entry starts at CONTENT_START with no blocks, the forward pass
    # then lays them out one after another.
    entries = reconcile_offsets(entries, {index: item.size for index, item in enumerate(prepared)})
    check_layout(entries)

    header = ContainerHeader(entry_count=len(entries))
    with _open_container(path, "w+b") as stream:
        write_header_and_table(stream, header, entries)
        write_payloads(stream, entries, [item.payload for item in prepared])
    return [item.name for item in prepared]


def run_operation(operation: Operation) -> object:
    """Run one of the five supported operations."""

    if isinstance(operation, ListOperation):
        return list_container(operation.container)
    if isinstance(operation, ExtractOperation):
        return extract_container(operation.container, operation.output_dir)
    if isinstance(operation, UpdateOperation):
        return update_container(operation.container, operation.requests)
    if isinstance(operation, ReplaceOperation):
        return replace_container(operation.container, operation.requests)
    if isinstance(operation, CreateOperation):
        return create_container(operation.container, operation.requests)
    raise TypeError(f"unsupported operation: {operation!r}")


def build_cli() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="imgdata-tool",
        description="List, extract, update, replace or create Android imgdata images",
        epilog=(
            "X, Y, W and H are unsigned 32-bit integers and may be given as 0x<HEX> "
            "or 0<OCT>; use - to keep the existing value. Entry names are the file "
            f"names without extension and may not exceed {NAME_FIELD_SIZE} characters."
        ),
    )

    modes = parser.add_mutually_exclusive_group(required=True)
    modes.add_argument(
        "-l", "--list", dest="mode", action="store_const", const="list",
        help="list the header and the metadata table",
    )
    modes.add_argument(
        "-x", "--extract", dest="mode", action="store_const", const="extract",
        help="extract every image as <name>.png",
    )
    modes.add_argument(
        "-u", "--update", dest="mode", action="store_const", const="update",
        help="update metadata with name[:X[:Y[:W[:H]]]] tokens",
    )
    modes.add_argument(
        "-r", "--replace", dest="mode", action="store_const", const="replace",
        help="replace images with file.png[:X[:Y]] tokens",
    )
    modes.add_argument(
        "-c", "--create", dest="mode", action="store_const", const="create",
        help="create a new container (overwriting any existing!) from file.png[:X[:Y]] tokens",
    )

    parser.add_argument("container", type=Path, help="path to the imgdata image")
    parser.add_argument("tokens", nargs="*", metavar="token", help="entries to update, replace or create")
    parser.add_argument(
        "-o", "--output-dir", type=Path, default=Path("."),
        help="directory receiving extracted PNG files (default: current directory)",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="print debug diagnostics")
    return parser


def _parse_tokens(tokens: Sequence[str], parse) -> Tuple[UpdateRequest, ...]:
    requests: List[UpdateRequest] = []
    for token in tokens:
        try:
            requests.append(parse(token))
        except (NameTooLong, InvalidToken) as exc:
            LOGGER.warning("%s, skipping", exc)
    return tuple(requests)


def build_operation(args: argparse.Namespace, parser: argparse.ArgumentParser) -> Operation:
    if args.mode in ("list", "extract"):
        if args.tokens:
            parser.error(f"--{args.mode} takes only the path of the imgdata image")
        if args.mode == "list":
            return ListOperation(args.container)
        return ExtractOperation(args.container, args.output_dir)

    if not args.tokens:
        parser.error(f"--{args.mode} needs at least one token")

    if args.mode == "update":
        return UpdateOperation(args.container, _parse_tokens(args.tokens, parse_update_token))
    if args.mode == "replace":
        return ReplaceOperation(args.container, _parse_tokens(args.tokens, parse_image_token))
    return CreateOperation(args.container, _parse_tokens(args.tokens, parse_image_token))


def main(argv: Iterable[str] | None = None) -> int:
    parser = build_cli()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(levelname)s: %(message)s",
    )

    operation = build_operation(args, parser)
    try:
        result = run_operation(operation)
    except ImgDataError as exc:
        LOGGER.error("%s", exc)
        return 1

    if isinstance(operation, ListOperation):
        header, entries = result
        for line in format_listing(header, entries):
            print(line)
    elif isinstance(operation, ExtractOperation):
        print(f"Extracted {len(result)} image(s) to {operation.output_dir}")
    elif isinstance(operation, UpdateOperation):
        print(f"Updated {len(result)} entr{'y' if len(result) == 1 else 'ies'} in {operation.container}")
    elif isinstance(operation, ReplaceOperation):
        print(f"Replaced {len(result)} image(s) in {operation.container}")
    else:
        print(f"Created {operation.container} with {len(result)} image(s)")
    return 0


if __name__ == "__main__":
    sys.exit(main())
