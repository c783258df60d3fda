"""
romlayout.py — On-ROM file-system layout for Epson PX-8 ROM capsules.

Shared by makerom.py (packer) and dumprom.py (unpacker).  Covers M format
images (programs copied into the TPA before execution), the layout used
by PX-8, PX-4 and EHT-10 capsules.

ROM layout (256 kbit = 0x8000 bytes):
    Slot 0            ROM header (32 bytes)
    Slots 1..N-1      Directory entries (32 bytes each), N = dir_entries
    N*32 ..           File area, 1 KiB blocks numbered from 1
    ..end             Unused, 0xFF

ROM header (directory slot 0):
    +0   id[2]          0xE5, format (0x37=M, 0x50=P)
    +2   capacity[1]    0x08/0x10/0x20/0x40/0x80 = 64k/128k/256k/512k/1M bit
    +3   checksum[2]    u16 LE  (size of the file area in bytes)
    +5   system[3]      ASCII, "H80"
    +8   rom_name[14]   ASCII
    +22  dir_entries[1] slots incl. header, multiple of 4, <= 32
    +23  v[1]           'V'
    +24  version[2]     ASCII digits
    +26  month[2] day[2] year[2]   ASCII digits

Directory entry:
    +0   validity[1]    0x00=valid 0xE5=free
    +1   name[8]        ASCII
    +9   type[3]        ASCII
    +12  extent[1]      logical extent number
    +13  zero[2]        u16 LE, always 0
    +15  records[1]     128-byte records in this extent (0..128)
    +16  alloc[16]      1-based block numbers, 0 = unused

All text fields are padded on the right with spaces, no terminator.

On a 27C256 the two 16 KiB halves are exchanged by the cartridge wiring,
so 0x8000-byte images are stored with their halves swapped.
"""

from __future__ import annotations

import os
import struct
from dataclasses import dataclass, field

# ── Constants ──────────────────────────────────────────────────────────

MAGIC = 0xE5
FORMAT_M = 0x37
FORMAT_P = 0x50                     # not supported

CAPACITY_64KBIT   = 0x08
CAPACITY_128KBIT  = 0x10
CAPACITY_256KBIT  = 0x20
CAPACITY_512KBIT  = 0x40            # not supported
CAPACITY_1024KBIT = 0x80            # not supported

CAPACITY_NAMES = {
    CAPACITY_64KBIT: "64 kbit", CAPACITY_128KBIT: "128 kbit",
    CAPACITY_256KBIT: "256 kbit", CAPACITY_512KBIT: "512 kbit",
    CAPACITY_1024KBIT: "1 Mbit",
}

FORMAT_NAMES = {FORMAT_M: "M", FORMAT_P: "P"}

ENTRY_SIZE = 32
MAX_DIR_ENTRIES = 0x20
MAX_DATA_SLOTS = MAX_DIR_ENTRIES - 1
BLOCK_SIZE = 1024
RECORD_SIZE = 128
RECORDS_PER_BLOCK = BLOCK_SIZE // RECORD_SIZE
ALLOC_SLOTS = 16

ROM_SIZE_256KBIT = 0x8000
HALF_256KBIT = ROM_SIZE_256KBIT // 2

ENTRY_VALID = 0x00
ENTRY_FREE = 0xE5
FILL_UNUSED = 0xFF
PAD = 0x20

NAME_LEN = 8
TYPE_LEN = 3
SYSTEM_NAME_LEN = 3
ROM_NAME_LEN = 14

# Defaults written by the packer
SYSTEM_NAME = "H80"
ROM_VERSION = "10"
ROM_MONTH = "11"
ROM_DAY = "16"
ROM_YEAR = "20"


# ── Errors ─────────────────────────────────────────────────────────────

class RomError(Exception):
    """Base class for every error reported by the ROM tools."""

    def __init__(self, message: str, param: str | None = None):
        super().__init__(message)
        self.message = message
        self.param = param

    def __str__(self) -> str:
        if self.param is not None:
            return f"{self.message} : {self.param}"
        return self.message


class UsageError(RomError, ValueError):
    pass


class OutputExists(RomError, FileExistsError):
    pass


class InputOpenFailed(RomError, OSError):
    pass


class OutputWriteFailed(RomError, OSError):
    pass


class BadFileName(RomError, ValueError):
    pass


class OutOfDirectorySpace(RomError, RuntimeError):
    pass


class OutOfRomSpace(RomError, RuntimeError):
    pass


class NotARom(RomError, ValueError):
    pass


class CorruptDirectory(RomError, ValueError):
    pass


# ── Data classes ───────────────────────────────────────────────────────

@dataclass
class RomHeader:
    """The 32-byte header overlaid on directory slot 0."""
    rom_name: str = ""
    dir_entries: int = 4
    checksum: int = 0
    capacity: int = CAPACITY_256KBIT
    system_name: str = SYSTEM_NAME
    version: str = ROM_VERSION
    month: str = ROM_MONTH
    day: str = ROM_DAY
    year: str = ROM_YEAR
    magic: int = MAGIC
    format: int = FORMAT_M
    v: str = "V"

    @property
    def format_name(self) -> str:
        return FORMAT_NAMES.get(self.format, f"?0x{self.format:02X}")

    @property
    def capacity_name(self) -> str:
        return CAPACITY_NAMES.get(self.capacity, f"?0x{self.capacity:02X}")

    @property
    def date(self) -> str:
        return f"{self.month}/{self.day}/{self.year}"


@dataclass
class DirEntry:
    """One 32-byte directory entry: a single extent of a logical file."""
    name: str
    ftype: str
    extent: int = 0
    record_count: int = 0
    allocation_map: list[int] = field(default_factory=list)
    validity: int = ENTRY_VALID
    zero: int = 0

    @property
    def valid(self) -> bool:
        return self.validity == ENTRY_VALID

    @property
    def full_name(self) -> str:
        return f"{self.name}.{self.ftype}"

    @property
    def blocks(self) -> list[int]:
        """Non-zero block numbers, in map order."""
        return [b for b in self.allocation_map if b]

    @property
    def full(self) -> bool:
        return len(self.allocation_map) >= ALLOC_SLOTS


@dataclass
class RomFile:
    """A logical file: one or more extents sharing a name and type."""
    name: str
    ftype: str
    extents: list[DirEntry] = field(default_factory=list)
    data: bytes = b""

    @property
    def full_name(self) -> str:
        return f"{self.name}.{self.ftype}"

    @property
    def blocks(self) -> list[int]:
        return [b for e in self.extents for b in e.blocks]

    @property
    def size(self) -> int:
        """Stored size in bytes (always a whole number of blocks)."""
        return len(self.blocks) * BLOCK_SIZE


# ── Fixed-width text ───────────────────────────────────────────────────

def encode_fixed(text: str, width: int) -> bytes:
    """Encode *text* into a *width*-byte field padded with spaces."""
    if len(text) > width:
        raise BadFileName(f"Field longer than {width} characters", text)
    if not all(0x20 < ord(c) < 0x7F for c in text):
        raise BadFileName("Field must be printable ASCII without spaces",
                          text)
    return text.encode("ascii").ljust(width, bytes([PAD]))


def decode_fixed(raw: bytes | bytearray | memoryview) -> str:
    """Decode a space-padded field, stopping at the first space."""
    raw = bytes(raw).split(bytes([PAD]), 1)[0]
    return raw.decode("ascii", errors="replace")


def split_8_3(full: str) -> tuple[str, str]:
    """Split ``NAME.EXT`` on the last '.' into (name, ext)."""
    if "/" in full or os.sep in full or (os.altsep and os.altsep in full):
        raise BadFileName("Input files must be 8.3 (no directories)", full)
    name, dot, ext = full.rpartition(".")
    if not dot or not name or not ext:
        raise BadFileName("Input files must be 8.3", full)
    if len(name) > NAME_LEN or len(ext) > TYPE_LEN:
        raise BadFileName("Input files must be 8.3", full)
    if " " in full:
        raise BadFileName("Input files must not contain spaces", full)
    return name, ext


# ── Address arithmetic ─────────────────────────────────────────────────

def round_up_4(n: int) -> int:
    return (n + 3) // 4 * 4


def valid_dir_entries(n: int) -> bool:
    """True if *n* is a legal header dir_entries value (4, 8, .. 32)."""
    return 4 <= n <= MAX_DIR_ENTRIES and n % 4 == 0


def dir_entry_offset(slot: int, dir_entries: int = MAX_DIR_ENTRIES) -> int:
    assert 1 <= slot <= dir_entries - 1, f"bad directory slot {slot}"
    return slot * ENTRY_SIZE


def file_area_start(dir_entries: int) -> int:
    assert dir_entries % 4 == 0 and 0 <= dir_entries <= MAX_DIR_ENTRIES
    return dir_entries * ENTRY_SIZE


def block_address(block: int, dir_entries: int) -> int:
    """Byte offset of 1-based *block* in a ROM with *dir_entries* slots."""
    assert block >= 1, f"bad block number {block}"
    return file_area_start(dir_entries) + (block - 1) * BLOCK_SIZE


def capacity_bytes(capacity: int) -> int:
    """ROM size in bytes for a header capacity code.

    The code is the device size in KiB: 0x20 (256 kbit) is 32 KiB.
    """
    return capacity * 1024


def swap_halves(image: bytes | bytearray) -> bytearray:
    """Exchange the two 16 KiB halves of a 27C256 image.

    Converts between the physical and logical address order; applying it
    twice gives back the original image.
    """
    if len(image) != ROM_SIZE_256KBIT:
        raise ValueError(f"Half swap needs a 0x{ROM_SIZE_256KBIT:X}-byte "
                         f"image, got 0x{len(image):X}")
    return bytearray(image[HALF_256KBIT:]) + bytearray(image[:HALF_256KBIT])


# ── Header / entry codecs ──────────────────────────────────────────────

def is_rom_header(buf: bytes | bytearray) -> bool:
    """True if *buf* starts with the M format magic (both id bytes)."""
    return len(buf) >= ENTRY_SIZE and buf[0] == MAGIC and buf[1] == FORMAT_M


def read_header(buf: bytes | bytearray) -> RomHeader:
    """Parse the ROM header at offset 0 of *buf*."""
    raw = bytes(buf[0:ENTRY_SIZE])
    if len(raw) < ENTRY_SIZE:
        raise NotARom(f"Image shorter than a {ENTRY_SIZE}-byte header")
    return RomHeader(
        magic=raw[0],
        format=raw[1],
        capacity=raw[2],
        checksum=struct.unpack_from("<H", raw, 3)[0],
        system_name=decode_fixed(raw[5:8]),
        rom_name=raw[8:22].decode("ascii", errors="replace").rstrip(" "),
        dir_entries=raw[22],
        v=chr(raw[23]),
        version=raw[24:26].decode("ascii", errors="replace"),
        month=raw[26:28].decode("ascii", errors="replace"),
        day=raw[28:30].decode("ascii", errors="replace"),
        year=raw[30:32].decode("ascii", errors="replace"),
    )


def write_header(buf: bytearray, header: RomHeader):
    """Serialise *header* into the first 32 bytes of *buf*."""
    raw = bytearray(ENTRY_SIZE)
    raw[0] = header.magic
    raw[1] = header.format
    raw[2] = header.capacity
    struct.pack_into("<H", raw, 3, header.checksum & 0xFFFF)
    raw[5:8] = encode_fixed(header.system_name, SYSTEM_NAME_LEN)
    raw[8:22] = header.rom_name.encode("ascii", errors="replace")[
        :ROM_NAME_LEN].ljust(ROM_NAME_LEN, bytes([PAD]))
    raw[22] = header.dir_entries
    raw[23] = ord(header.v)
    raw[24:26] = encode_fixed(header.version, 2)
    raw[26:28] = encode_fixed(header.month, 2)
    raw[28:30] = encode_fixed(header.day, 2)
    raw[30:32] = encode_fixed(header.year, 2)
    buf[0:ENTRY_SIZE] = raw


def read_dir_entry(buf: bytes | bytearray, slot: int,
                   dir_entries: int = MAX_DIR_ENTRIES) -> DirEntry:
    """Parse directory *slot* of *buf*.  Free slots are returned too."""
    off = dir_entry_offset(slot, dir_entries)
    raw = bytes(buf[off : off + ENTRY_SIZE])
    return DirEntry(
        validity=raw[0],
        name=decode_fixed(raw[1:9]),
        ftype=decode_fixed(raw[9:12]),
        extent=raw[12],
        zero=struct.unpack_from("<H", raw, 13)[0],
        record_count=raw[15],
        allocation_map=list(raw[16:32]),
    )


def write_dir_entry(buf: bytearray, slot: int, entry: DirEntry):
    """Serialise *entry* into directory *slot* of *buf*."""
    off = dir_entry_offset(slot)
    assert len(entry.allocation_map) <= ALLOC_SLOTS
    raw = bytearray(ENTRY_SIZE)
    raw[0] = entry.validity
    raw[1:9] = encode_fixed(entry.name, NAME_LEN)
    raw[9:12] = encode_fixed(entry.ftype, TYPE_LEN)
    raw[12] = entry.extent
    struct.pack_into("<H", raw, 13, entry.zero)
    raw[15] = entry.record_count
    raw[16 : 16 + len(entry.allocation_map)] = bytes(entry.allocation_map)
    buf[off : off + ENTRY_SIZE] = raw
