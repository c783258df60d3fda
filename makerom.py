#!/usr/bin/env python3
"""
makerom.py — Build ROM capsule images for the Epson PX-8 (and PX-4, EHT-10).

Packs a list of files into a 256 kbit (27C256, 32 KiB) M format image.
Files are stored in command-line order, each split into 1 KiB blocks that
are numbered sequentially across the whole ROM.  A directory entry maps up
to 16 blocks; longer files continue in further entries with increasing
logical extent numbers.

Usage:
    makerom <romfile> <file1> [file2 ...] [--rom-name NAME]
            [--rom-version VV] [--date MMDDYY]

Input files must be flat 8.3 names in the current directory.  The output
file must not already exist.
"""

from __future__ import annotations

import argparse
import sys
from dataclasses import dataclass, replace
from pathlib import Path

from romlayout import (
    ALLOC_SLOTS, BLOCK_SIZE, CAPACITY_256KBIT, ENTRY_FREE, ENTRY_SIZE,
    FILL_UNUSED, FORMAT_M, MAX_DATA_SLOTS, MAX_DIR_ENTRIES, NAME_LEN,
    RECORDS_PER_BLOCK, ROM_DAY, ROM_MONTH, ROM_NAME_LEN,
    ROM_VERSION, ROM_YEAR, SYSTEM_NAME, SYSTEM_NAME_LEN, TYPE_LEN,
    BadFileName, DirEntry, InputOpenFailed, OutOfDirectorySpace,
    OutOfRomSpace, OutputExists, OutputWriteFailed, RomError, RomFile,
    RomHeader, UsageError, capacity_bytes, encode_fixed, file_area_start,
    round_up_4, split_8_3, swap_halves, write_dir_entry, write_header,
)

MAX_BLOCK = 0xFF                    # allocation map entries are u8


# ── Options ────────────────────────────────────────────────────────────

@dataclass
class RomOptions:
    """Header values written by the packer."""
    rom_name: str = ""
    system_name: str = SYSTEM_NAME
    version: str = ROM_VERSION
    date: str = ROM_MONTH + ROM_DAY + ROM_YEAR     # MMDDYY

    def validate(self):
        if len(self.system_name) > SYSTEM_NAME_LEN:
            raise UsageError("System name longer than 3 characters",
                             self.system_name)
        try:
            encode_fixed(self.system_name, SYSTEM_NAME_LEN)
        except BadFileName:
            raise UsageError("System name must be printable ASCII",
                             self.system_name) from None
        if len(self.version) != 2 or not self.version.isdigit():
            raise UsageError("Version must be two digits", self.version)
        if len(self.date) != 6 or not self.date.isdigit():
            raise UsageError("Date must be six digits (MMDDYY)", self.date)

    @property
    def month(self) -> str:
        return self.date[0:2]

    @property
    def day(self) -> str:
        return self.date[2:4]

    @property
    def year(self) -> str:
        return self.date[4:6]


# ── Builder ────────────────────────────────────────────────────────────

class RomBuilder:
    """Accumulates files and lays them out as a 256 kbit M format ROM."""

    def __init__(self, options: RomOptions | None = None):
        self.options = options or RomOptions()
        self.options.validate()
        self.rom_size = capacity_bytes(CAPACITY_256KBIT)
        self.capacity = CAPACITY_256KBIT
        self.entries: list[DirEntry] = []   # entries[i] lives in slot i+1
        self.files: list[RomFile] = []
        self.file_area = bytearray()
        self.next_block = 1

    # ── allocation ─────────────────────────────────────────────────

    @property
    def next_dir_slot(self) -> int:
        return len(self.entries) + 1

    @property
    def dir_entries(self) -> int:
        """Header dir_entries: used slots plus the header, rounded to 4."""
        return round_up_4(len(self.entries) + 1)

    @property
    def file_area_size(self) -> int:
        return len(self.file_area)

    def _new_entry(self, name: str, ftype: str, extent: int) -> DirEntry:
        if self.next_dir_slot > MAX_DATA_SLOTS:
            raise OutOfDirectorySpace("Out of directory space.",
                                      f"{name}.{ftype}")
        entry = DirEntry(name, ftype, extent=extent)
        self.entries.append(entry)
        return entry

    def add_file(self, filename: str, data: bytes | bytearray) -> RomFile:
        """Store *data* under the 8.3 *filename*.  Returns the new file."""
        name, ftype = split_8_3(filename)
        encode_fixed(name, NAME_LEN)
        encode_fixed(ftype, TYPE_LEN)

        chunks = (len(data) + BLOCK_SIZE - 1) // BLOCK_SIZE
        padded = bytes(data) + b"\x00" * (chunks * BLOCK_SIZE - len(data))

        entry = self._new_entry(name, ftype, 0)
        rfile = RomFile(name, ftype, [entry], padded)
        for i in range(chunks):
            if entry.full:
                entry = self._new_entry(name, ftype, entry.extent + 1)
                rfile.extents.append(entry)
            if self.next_block > MAX_BLOCK:
                raise OutOfRomSpace("Out of ROM space.", filename)
            entry.allocation_map.append(self.next_block)
            entry.record_count += RECORDS_PER_BLOCK
            self.file_area += padded[i * BLOCK_SIZE : (i + 1) * BLOCK_SIZE]
            self.next_block += 1
        self.files.append(rfile)
        return rfile

    # ── serialisation ──────────────────────────────────────────────

    def header(self) -> RomHeader:
        return RomHeader(
            rom_name=self.options.rom_name[:ROM_NAME_LEN],
            dir_entries=self.dir_entries,
            checksum=self.file_area_size & 0xFFFF,
            capacity=self.capacity,
            system_name=self.options.system_name,
            version=self.options.version,
            month=self.options.month,
            day=self.options.day,
            year=self.options.year,
            format=FORMAT_M,
        )

    def build(self) -> bytes:
        """Return the finished ROM image in physical (swapped) order."""
        header = self.header()
        dir_size = header.dir_entries * ENTRY_SIZE
        used = dir_size + self.file_area_size
        if used > self.rom_size:
            raise OutOfRomSpace("Out of ROM space.",
                                f"{used} > {self.rom_size} bytes")

        directory = bytearray([ENTRY_FREE]) * (MAX_DIR_ENTRIES * ENTRY_SIZE)
        write_header(directory, header)
        for slot, entry in enumerate(self.entries, start=1):
            assert len(entry.allocation_map) <= ALLOC_SLOTS
            write_dir_entry(directory, slot, entry)

        rom = bytearray([FILL_UNUSED]) * self.rom_size
        rom[0:dir_size] = directory[0:dir_size]
        start = file_area_start(header.dir_entries)
        rom[start : start + self.file_area_size] = self.file_area

        # 27C256 parts are wired with the address halves exchanged
        if header.capacity == CAPACITY_256KBIT:
            rom = swap_halves(rom)
        return bytes(rom)


# ── File-level helpers ─────────────────────────────────────────────────

def read_input(path: str | Path) -> bytes:
    try:
        with open(path, "rb") as f:
            return f.read()
    except OSError as exc:
        raise InputOpenFailed("Failed to open input file.",
                              str(path)) from exc


def write_rom(path: str | Path, image: bytes):
    """Create *path* and write *image*.  Never overwrites an existing file;
    a partially written file is removed."""
    path = Path(path)
    try:
        f = open(path, "xb")
    except FileExistsError:
        raise OutputExists("Output file already exists.", str(path)) from None
    except OSError as exc:
        raise OutputWriteFailed("Failed to open output file for writing.",
                                str(path)) from exc
    try:
        with f:
            written = f.write(image)
            if written != len(image):
                raise OutputWriteFailed("Short write to output file.",
                                        str(path))
    except OutputWriteFailed:
        path.unlink(missing_ok=True)
        raise
    except OSError as exc:
        path.unlink(missing_ok=True)
        raise OutputWriteFailed("Failed to write to output file.",
                                str(path)) from exc


def make_rom(out_path: str | Path, inputs: list[str | Path],
             options: RomOptions | None = None) -> RomBuilder:
    """Pack *inputs* into a new ROM image at *out_path*.

    The ROM name defaults to the output path.  Returns the builder so the
    caller can report what was stored.
    """
    if not inputs:
        raise UsageError("At least one input file is required")
    rom_name = str(out_path)
    out_path = Path(out_path)
    if out_path.exists():
        raise OutputExists("Output file already exists.", rom_name)

    options = options or RomOptions()
    if not options.rom_name:
        options = replace(options, rom_name=rom_name)
    builder = RomBuilder(options)

    for path in inputs:
        filename = str(path)
        split_8_3(filename)
        builder.add_file(filename, read_input(path))

    write_rom(out_path, builder.build())
    return builder


# ── CLI ────────────────────────────────────────────────────────────────

def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        prog="makerom",
        description="Build an Epson PX-8 ROM capsule image (M format, 256 kbit)",
    )
    parser.add_argument("romfile", help="Output ROM image (must not exist)")
    parser.add_argument("files", nargs="+", help="8.3 files to store")
    parser.add_argument("--rom-name", default="",
                        help="ROM name in the header (default: romfile)")
    parser.add_argument("--rom-version", default=ROM_VERSION,
                        help=f"Two-digit ROM version (default: {ROM_VERSION})")
    parser.add_argument("--date", default=ROM_MONTH + ROM_DAY + ROM_YEAR,
                        help="ROM date as MMDDYY "
                             f"(default: {ROM_MONTH}{ROM_DAY}{ROM_YEAR})")
    args = parser.parse_args(argv)

    options = RomOptions(rom_name=args.rom_name, version=args.rom_version,
                         date=args.date)
    try:
        builder = make_rom(args.romfile, args.files, options)
    except RomError as exc:
        print(f"makerom: ERROR: {exc}", file=sys.stderr)
        return 1

    for rfile in builder.files:
        print(f"{rfile.full_name:<12} {rfile.size:>6} bytes  "
              f"{len(rfile.blocks):>2} blocks  {len(rfile.extents)} extent(s)")
    print(f"Created {args.romfile} ({builder.rom_size} bytes, "
          f"{len(builder.files)} files, {builder.file_area_size} bytes used, "
          f"{builder.dir_entries} dir entries)")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
