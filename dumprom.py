#!/usr/bin/env python3
"""
dumprom.py — Extract files from Epson PX-8 ROM capsule images.

Reads an M format image, undoes the 27C256 half swap when the image is
32 KiB, then walks the directory and writes one file per logical file.
Extracted files keep the 1 KiB block padding: the format does not record
the original length.

Usage:
    dumprom <romfile>               extract into the current directory
    dumprom <romfile> -d DIR        extract into DIR
    dumprom <romfile> -n            refuse to overwrite existing files
    dumprom <romfile> -l            list the directory only
    dumprom <romfile> -i            show the ROM header only
"""

from __future__ import annotations

import os
import sys
from pathlib import Path

from romlayout import (
    BLOCK_SIZE, ENTRY_SIZE, ROM_SIZE_256KBIT,
    CorruptDirectory, DirEntry, NotARom, OutputExists, OutputWriteFailed,
    RomError, RomFile, RomHeader, InputOpenFailed,
    block_address, is_rom_header, read_dir_entry, read_header, swap_halves,
    valid_dir_entries,
)


class RomImage:
    """A ROM image in logical address order, with its directory parsed."""

    def __init__(self, data: bytes | bytearray):
        if len(data) == ROM_SIZE_256KBIT:
            data = swap_halves(data)
        self.img = bytes(data)
        self.warnings: list[str] = []

        if not is_rom_header(self.img):
            raise NotARom("Not a valid rom file.")
        self.header: RomHeader = read_header(self.img)

        n = self.header.dir_entries
        if not valid_dir_entries(n):
            raise CorruptDirectory("Bad directory entry count",
                                   f"0x{n:02X}")
        if n * ENTRY_SIZE > len(self.img):
            raise CorruptDirectory("Directory extends past end of image",
                                   f"0x{n:02X}")

    @classmethod
    def from_bytes(cls, data: bytes | bytearray) -> "RomImage":
        """Parse an image held in memory, in physical (swapped) order."""
        return cls(data)

    @classmethod
    def load(cls, path: str | Path) -> "RomImage":
        """Load an image from file."""
        try:
            data = Path(path).read_bytes()
        except OSError as exc:
            raise InputOpenFailed("failed to open input file.",
                                  str(path)) from exc
        return cls.from_bytes(data)

    # ── directory ──────────────────────────────────────────────────

    def entries(self) -> list[tuple[int, DirEntry]]:
        """All directory slots as (slot, entry), free slots included."""
        n = self.header.dir_entries
        return [(slot, read_dir_entry(self.img, slot, n))
                for slot in range(1, n)]

    def _block(self, block: int) -> bytes:
        off = block_address(block, self.header.dir_entries)
        if off + BLOCK_SIZE > len(self.img):
            raise CorruptDirectory("Block outside of ROM", str(block))
        return self.img[off : off + BLOCK_SIZE]

    def logical_files(self) -> list[RomFile]:
        """Reassemble logical files from their extents, in directory order.

        An extent 0 entry starts a new file; later extents are appended to
        the file opened most recently.  Continuations that do not match the
        open file are still appended, with a warning.
        """
        self.warnings = []
        files: list[RomFile] = []
        current: RomFile | None = None
        chunks: list[bytes] = []
        expected = 0

        for slot, entry in self.entries():
            if not entry.valid:
                continue

            if entry.extent == 0:
                if current is not None:
                    current.data = b"".join(chunks)
                current = RomFile(entry.name, entry.ftype)
                files.append(current)
                chunks = []
                expected = 0
            elif current is None:
                self.warnings.append(
                    f"slot {slot}: extent {entry.extent} of "
                    f"{entry.full_name} has no first extent, skipped")
                continue
            else:
                if (entry.name, entry.ftype) != (current.name, current.ftype):
                    self.warnings.append(
                        f"slot {slot}: extent of {entry.full_name} "
                        f"follows {current.full_name}")
                if entry.extent != expected:
                    self.warnings.append(
                        f"slot {slot}: {current.full_name} extent "
                        f"{entry.extent}, expected {expected}")

            current.extents.append(entry)
            for block in entry.blocks:
                chunks.append(self._block(block))
            expected = entry.extent + 1

        if current is not None:
            current.data = b"".join(chunks)
        return files

    def read_file(self, name: str) -> bytes:
        """Return the contents of the logical file *name* (``NAME.EXT``)."""
        for rfile in self.logical_files():
            if rfile.full_name == name:
                return rfile.data
        raise FileNotFoundError(f"File not found: {name!r}")

    def info(self) -> dict:
        """Return decoded header fields."""
        h = self.header
        return {
            "format": h.format_name,
            "capacity": f"{h.capacity_name} (0x{h.capacity:02X})",
            "checksum": h.checksum,
            "system_name": h.system_name,
            "rom_name": h.rom_name,
            "dir_entries": h.dir_entries,
            "version": h.version,
            "date": h.date,
            "files": len(self.logical_files()),
        }


# ── Extraction ─────────────────────────────────────────────────────────

def _output_name(rfile: RomFile) -> str:
    if not rfile.name or not rfile.ftype:
        raise CorruptDirectory("Empty file name in directory",
                               repr(rfile.full_name))
    full = rfile.full_name
    if "/" in full or os.sep in full or (os.altsep and os.altsep in full):
        raise CorruptDirectory("File name in directory contains a path",
                               repr(full))
    return full


def dump_rom(rom_path: str | Path, dest: str | Path = ".",
             clobber: bool = True) -> RomImage:
    """Extract every logical file of the ROM at *rom_path* into *dest*.

    Existing files are overwritten unless *clobber* is false, in which
    case OutputExists is raised.  Returns the parsed image.
    """
    rom = RomImage.load(rom_path)
    dest = Path(dest)
    for rfile in rom.logical_files():
        out = dest / _output_name(rfile)
        mode = "wb" if clobber else "xb"
        try:
            with open(out, mode) as f:
                f.write(rfile.data)
        except FileExistsError:
            raise OutputExists("Output file already exists.",
                               str(out)) from None
        except OSError as exc:
            raise OutputWriteFailed("Could not open output file.",
                                    str(out)) from exc
    return rom


# ── CLI ────────────────────────────────────────────────────────────────

def _print_listing(rom: RomImage):
    files = rom.logical_files()
    if not files:
        print("(empty)")
        return
    print(f"{'Name':<12} {'Size':>6}  {'Extents':>7}  Blocks")
    print("-" * 48)
    for rfile in files:
        blocks = rfile.blocks
        span = f"{blocks[0]}-{blocks[-1]}" if blocks else "-"
        print(f"{rfile.full_name:<12} {rfile.size:>6}  "
              f"{len(rfile.extents):>7}  {span}")


def main(argv: list[str] | None = None) -> int:
    import argparse

    parser = argparse.ArgumentParser(
        prog="dumprom",
        description="Extract files from an Epson PX-8 ROM capsule image",
    )
    parser.add_argument("romfile", help="ROM image to read")
    parser.add_argument("-d", "--directory", default=".",
                        help="Destination directory (default: .)")
    parser.add_argument("-n", "--no-clobber", action="store_true",
                        help="Refuse to overwrite existing files")
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument("-l", "--list", action="store_true",
                      help="List the directory, extract nothing")
    mode.add_argument("-i", "--info", action="store_true",
                      help="Show the ROM header, extract nothing")
    args = parser.parse_args(argv)

    try:
        if args.list or args.info:
            rom = RomImage.load(args.romfile)
            if args.info:
                for k, v in rom.info().items():
                    print(f"  {k}: {v}")
            else:
                _print_listing(rom)
        else:
            rom = dump_rom(args.romfile, args.directory,
                           clobber=not args.no_clobber)
            for rfile in rom.logical_files():
                print(f"Extracted {rfile.full_name} ({rfile.size} bytes)")
    except RomError as exc:
        print(f"dumprom: ERROR: {exc}", file=sys.stderr)
        return 1

    for warning in rom.warnings:
        print(f"dumprom: warning: {warning}", file=sys.stderr)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
