#!/usr/bin/env python3
"""
mfsextract.py - MFS Disk Image Extractor

Lists and extracts the files of a Macintosh File System (MFS) floppy image.
Accepts raw volume images and Disk Copy 4.2 images (--diskcopy).

Usage:
    mfsextract.py info image.dsk
    mfsextract.py ls image.dsk
    mfsextract.py extract image.dsk <output_dir>

Extracted files get their data fork as <name> and, when present, their
resource fork as <name>.rsrc.
"""

import argparse
import io
import os
import sys

import mfs

DISKCOPY_HEADER_SIZE = 84
RESOURCE_SUFFIX = ".rsrc"


# =============================================================================
# Byte source
# =============================================================================

class OffsetImage:
    """Read-only view of a file whose volume starts offset bytes in."""

    def __init__(self, fp, offset):
        self.fp = fp
        self.offset = offset

    def seek(self, pos, whence=io.SEEK_SET):
        if whence == io.SEEK_SET:
            pos += self.offset
        return self.fp.seek(pos, whence) - self.offset

    def tell(self):
        return self.fp.tell() - self.offset

    def read(self, size=-1):
        return self.fp.read(size)


# =============================================================================
# Formatting helpers
# =============================================================================

def format_date(unix_seconds):
    return mfs.unix_to_datetime(unix_seconds).strftime("%Y-%m-%d %H:%M:%S")


def printable_code(code):
    return "".join(c if c.isprintable() else "?" for c in code)


def safe_filename(name, index):
    name = name.replace("/", ":").replace("\x00", "")
    if name in ("", ".", ".."):
        name = f"file{index}"
    return name


# =============================================================================
# info command
# =============================================================================

def cmd_info(volume):
    g = volume.geometry
    free = sum(1 for e in volume.allocation_map if e == mfs.ALLOCATION_UNUSED)
    print(f"Volume name:       {volume.name}")
    print(f"Created:           {format_date(g.created)}")
    print(f"Last backup:       {format_date(g.last_backup)}")
    print(f"Attributes:        0x{g.attributes:04X}")
    print(f"Files:             {g.file_count}")
    print(f"Directory:         block {g.directory_start_block}, "
          f"{g.directory_block_length} blocks")
    print(f"Allocation blocks: {g.allocation_block_count} x "
          f"{g.allocation_block_size} bytes ({g.free_blocks} free, "
          f"{free} unused in map)")
    print(f"Next file number:  {g.next_file_number}")
    return 0


# =============================================================================
# ls command
# =============================================================================

def cmd_ls(volume):
    print(f"{'#':>3}  {'Type':<4} {'Crtr':<4} {'Data':>8} {'Rsrc':>8}  "
          f"{'Modified':<19}  Name")
    print(f"{'---':>3}  {'----':<4} {'----':<4} {'--------':>8} {'--------':>8}  "
          f"{'-------------------':<19}  ----")
    for i, entry in enumerate(volume.list_files()):
        print(f"{i:>3}  {printable_code(entry.file_type):<4} "
              f"{printable_code(entry.creator):<4} "
              f"{entry.data_fork.logical_length:>8} "
              f"{entry.resource_fork.logical_length:>8}  "
              f"{format_date(entry.modified):<19}  {entry.name}")
    return 0


# =============================================================================
# extract command
# =============================================================================

def _extract_fork(open_fork, index, output_path, mtime):
    try:
        data = open_fork(index).read()
    except (mfs.MFSError, IOError) as e:
        print(f"Error: Cannot read fork for {output_path}: {e}", file=sys.stderr)
        return -1

    try:
        with open(output_path, "wb") as f:
            f.write(data)
    except IOError as e:
        print(f"Error: Cannot create file: {output_path}: {e}", file=sys.stderr)
        return -1

    try:
        os.utime(output_path, (mtime, mtime))
    except (OverflowError, OSError) as e:
        print(f"Warning: Cannot set time on {output_path}: {e}", file=sys.stderr)
    return 0


def cmd_extract(volume, output_dir, verbose, resource=True):
    os.makedirs(output_dir, exist_ok=True)

    extracted = 0
    errors = 0
    used = set()

    for i, entry in enumerate(volume.list_files()):
        base = safe_filename(entry.name, i)
        name = base
        suffix = i
        while name in used or name + RESOURCE_SUFFIX in used:
            name = f"{base}.{suffix}"
            suffix += 1
        used.add(name)
        used.add(name + RESOURCE_SUFFIX)

        out_path = os.path.join(output_dir, name)
        if verbose:
            print(f"Extracting: {out_path} ({entry.data_fork.logical_length} + "
                  f"{entry.resource_fork.logical_length} bytes)")

        failed = _extract_fork(volume.open_data_fork, i, out_path,
                               entry.modified) != 0
        if resource and entry.resource_fork.logical_length > 0:
            if _extract_fork(volume.open_resource_fork, i,
                             out_path + RESOURCE_SUFFIX, entry.modified) != 0:
                failed = True

        if failed:
            errors += 1
        else:
            extracted += 1

    print(f"\nExtracted {extracted} files"
          f"{f', {errors} with errors' if errors else ''}.")
    return 0 if errors == 0 else 1


# =============================================================================
# Main
# =============================================================================

def main(argv=None):
    parser = argparse.ArgumentParser(
        description="MFS Disk Image Extractor",
        usage="%(prog)s [options] <command> image [args...]",
    )

    parser.add_argument("command", choices=["info", "ls", "extract"],
                        help="command to run")
    parser.add_argument("image", help="disk image file")
    parser.add_argument("args", nargs="*", help="command arguments")

    parser.add_argument("--diskcopy", action="store_true",
                        help="image is a Disk Copy 4.2 file")
    parser.add_argument("--offset", type=int, default=0,
                        help="byte offset of the volume inside the image")
    parser.add_argument("--no-resource", action="store_true",
                        help="do not extract resource forks")
    parser.add_argument("-v", "--verbose", action="store_true",
                        help="verbose output")

    args = parser.parse_args(argv)

    offset = args.offset
    if args.diskcopy:
        offset += DISKCOPY_HEADER_SIZE

    try:
        fp = open(args.image, "rb")
    except IOError as e:
        print(f"Error: Cannot open image: {args.image}: {e}", file=sys.stderr)
        return 1

    with fp:
        source = OffsetImage(fp, offset) if offset else fp
        try:
            volume = mfs.Volume.open(source)
        except (mfs.MFSError, IOError) as e:
            print(f"Error: Cannot read volume: {args.image}: {e}", file=sys.stderr)
            return 1

        if args.verbose:
            print(f"Volume: {volume.name} ({len(volume.list_files())} files)",
                  file=sys.stderr)

        if args.command == "info":
            return cmd_info(volume)
        if args.command == "ls":
            return cmd_ls(volume)

        if not args.args:
            print("Error: extract requires output directory argument", file=sys.stderr)
            return 1
        print(f"Extracting files to: {args.args[0]}\n")
        return cmd_extract(volume, args.args[0], args.verbose,
                           resource=not args.no_resource)


if __name__ == "__main__":
    sys.exit(main())
