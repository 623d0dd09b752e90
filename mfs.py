"""
mfs.py - Macintosh File System (MFS) volume reader

Reads the flat, single-directory volume format used by the original 400K
Macintosh floppies. Decodes the volume header, the packed 12-bit allocation
block map and the file directory, and reassembles the data and resource
forks of each file by following their allocation block chains.

The volume is read-only. The caller supplies a seekable binary file object
positioned over the raw volume (container formats such as Disk Copy 4.2 must
already be stripped); it must stay open for as long as the Volume is used.
"""

import io
import struct
from collections import namedtuple
from datetime import datetime, timedelta, timezone

# =============================================================================
# Constants
# =============================================================================

LOGICAL_BLOCK_SIZE = 512
HEADER_OFFSET = 1024
SIGNATURE = 0xD2D7

# Seconds between 1904-01-01 and 1970-01-01
MAC_EPOCH_OFFSET = 2082844800

MAX_FILE_NAME_LENGTH = 31    # excluding the length byte
MAX_VOLUME_NAME_LENGTH = 27  # excluding the length byte

# Allocation map sentinels
ALLOCATION_UNUSED = 0
ALLOCATION_TERMINAL = 1
FIRST_ALLOCATION_BLOCK = 2

HEADER_FORMAT = ">HIIHHHHHIIHIH28s"
HEADER_SIZE = struct.calcsize(HEADER_FORMAT)  # 64

DIRECTORY_RECORD_FORMAT = ">BB16sIHIIHIIII32s"
DIRECTORY_RECORD_SIZE = struct.calcsize(DIRECTORY_RECORD_FORMAT)  # 82
NAME_FIELD_SIZE = MAX_FILE_NAME_LENGTH + 1

# Records are never started when fewer than this many bytes would be left
# in the current logical block.
RECORD_ROOM_THRESHOLD = 52

TEXT_ENCODING = "mac_roman"


# =============================================================================
# Errors
# =============================================================================

class MFSError(Exception):
    """Base class for errors raised while reading an MFS volume."""


class FormatError(MFSError):
    """The volume is structurally invalid (bad signature, corrupt chain...)."""


# =============================================================================
# Data structures
# =============================================================================

VolumeGeometry = namedtuple("VolumeGeometry", [
    "signature", "created", "last_backup", "attributes", "file_count",
    "directory_start_block", "directory_block_length",
    "allocation_block_count", "allocation_block_size", "clump_size",
    "first_allocation_block", "next_file_number", "free_blocks",
    "volume_name",
])

Fork = namedtuple("Fork", ["start_block", "logical_length", "physical_length"])

FileDescriptor = namedtuple("FileDescriptor", [
    "name", "file_type", "creator", "finder_flags", "flags", "version",
    "file_number", "created", "modified", "data_fork", "resource_fork",
])


# =============================================================================
# Byte helpers
# =============================================================================

def read_exact(source, size):
    """Read exactly size bytes from source or raise IOError."""
    data = source.read(size)
    if len(data) != size:
        raise IOError(f"short read: wanted {size} bytes, got {len(data)}")
    return data


def pascal_string(data):
    """Decode a length-prefixed string; trailing bytes in the field are ignored."""
    length = data[0]
    if length == 0:
        return ""
    return data[1:length + 1].decode(TEXT_ENCODING)


def mac_to_unix(value):
    return int(value) - MAC_EPOCH_OFFSET


def unix_to_datetime(seconds):
    # also valid for negative seconds
    return datetime(1970, 1, 1, tzinfo=timezone.utc) + timedelta(seconds=seconds)


def mac_to_datetime(value):
    """Convert a raw 1904-epoch timestamp to an aware UTC datetime."""
    return unix_to_datetime(mac_to_unix(value))


# =============================================================================
# Volume header
# =============================================================================

def decode_header(source):
    """Read and validate the volume information block at offset 1024.

    Leaves the source positioned directly after the header, which is
    where the allocation block map starts.
    """
    source.seek(HEADER_OFFSET)
    (signature, created, last_backup, attributes, file_count, dir_start,
     dir_length, block_count, block_size, clump_size, first_block,
     next_file_number, free_blocks, raw_name) = struct.unpack(
        HEADER_FORMAT, read_exact(source, HEADER_SIZE))

    if signature != SIGNATURE:
        raise FormatError(f"invalid volume signature 0x{signature:04X}")
    if raw_name[0] > MAX_VOLUME_NAME_LENGTH:
        raise FormatError(f"volume name length {raw_name[0]} exceeds "
                          f"{MAX_VOLUME_NAME_LENGTH}")

    return VolumeGeometry(
        signature=signature,
        created=mac_to_unix(created),
        last_backup=mac_to_unix(last_backup),
        attributes=attributes,
        file_count=file_count,
        directory_start_block=dir_start,
        directory_block_length=dir_length,
        allocation_block_count=block_count,
        allocation_block_size=block_size,
        clump_size=clump_size,
        first_allocation_block=first_block,
        next_file_number=next_file_number,
        free_blocks=free_blocks,
        volume_name=pascal_string(raw_name),
    )


# =============================================================================
# Allocation block map
# =============================================================================

def decode_allocation_map(source, count):
    """Read count packed 12-bit map entries from the current position.

    Two entries share three bytes: ``ab cd ef`` holds ``0xabc`` and
    ``0xdef``. Entry i describes allocation block i + 2.
    """
    entries = [0] * count
    carry = 0
    for i in range(count):
        if i % 2 == 0:
            a, b = read_exact(source, 2)
            carry = b
            entries[i] = (a << 4) | (b >> 4)
        else:
            c = read_exact(source, 1)[0]
            entries[i] = ((carry & 0x0F) << 8) | c
    return entries


def block_chain(allocation_map, start_block):
    """Return the list of allocation blocks of the chain starting at start_block.

    Raises FormatError for an index outside the map or for a chain that
    does not reach the terminal marker within len(allocation_map) hops.
    """
    count = len(allocation_map)
    last_block = count + FIRST_ALLOCATION_BLOCK - 1
    blocks = []
    block = start_block
    while block != ALLOCATION_TERMINAL:
        if not FIRST_ALLOCATION_BLOCK <= block <= last_block:
            raise FormatError(f"allocation block {block} out of range "
                              f"[{FIRST_ALLOCATION_BLOCK}, {last_block}]")
        if len(blocks) >= count:
            raise FormatError(f"allocation chain from block {start_block} "
                              f"does not terminate")
        blocks.append(block)
        block = allocation_map[block - FIRST_ALLOCATION_BLOCK]
    return blocks


# =============================================================================
# File directory
# =============================================================================

def frame_delta(name_length):
    """Cursor adjustment after reading a maximum-size directory record.

    On disk a record is the 51-byte fixed part plus name bytes, padded to
    an even length. Returns the (non-positive) offset that moves the
    cursor from the end of the 82-byte read to the start of the next
    record.
    """
    delta = NAME_FIELD_SIZE - 1 - name_length
    if name_length % 2 == 0:
        delta -= 1
    return -delta


def parse_directory_record(raw):
    (flags, version, user_words, file_number, data_start, data_length,
     data_physical, rsrc_start, rsrc_length, rsrc_physical, created,
     modified, raw_name) = struct.unpack(DIRECTORY_RECORD_FORMAT, raw)

    if raw_name[0] > MAX_FILE_NAME_LENGTH:
        raise FormatError(f"file name length {raw_name[0]} exceeds "
                          f"{MAX_FILE_NAME_LENGTH}")

    return FileDescriptor(
        name=pascal_string(raw_name),
        file_type=user_words[0:4].decode(TEXT_ENCODING),
        creator=user_words[4:8].decode(TEXT_ENCODING),
        finder_flags=struct.unpack_from(">H", user_words, 8)[0],
        flags=flags,
        version=version,
        file_number=file_number,
        created=mac_to_unix(created),
        modified=mac_to_unix(modified),
        data_fork=Fork(data_start, data_length, data_physical),
        resource_fork=Fork(rsrc_start, rsrc_length, rsrc_physical),
    )


def parse_directory(source, geometry):
    """Parse geometry.file_count directory records, in on-disk order."""
    source.seek(geometry.directory_start_block * LOGICAL_BLOCK_SIZE)

    files = []
    for _ in range(geometry.file_count):
        raw = read_exact(source, DIRECTORY_RECORD_SIZE)
        files.append(parse_directory_record(raw))

        current = source.tell()
        if (current + RECORD_ROOM_THRESHOLD) % LOGICAL_BLOCK_SIZE < RECORD_ROOM_THRESHOLD:
            source.seek(LOGICAL_BLOCK_SIZE - current % LOGICAL_BLOCK_SIZE, io.SEEK_CUR)
            continue

        source.seek(frame_delta(raw[-NAME_FIELD_SIZE]), io.SEEK_CUR)

    return files


# =============================================================================
# Volume
# =============================================================================

class Volume:
    """An opened MFS volume.

    Holds the decoded header, allocation map and directory. Fork contents
    are never cached; every open re-reads the blocks from the source.
    """

    def __init__(self, source, geometry, allocation_map, files):
        self.source = source
        self.geometry = geometry
        self.allocation_map = allocation_map
        self.files = tuple(files)

    @classmethod
    def open(cls, source):
        geometry = decode_header(source)
        allocation_map = decode_allocation_map(source, geometry.allocation_block_count)
        files = parse_directory(source, geometry)
        return cls(source, geometry, allocation_map, files)

    @property
    def name(self):
        return self.geometry.volume_name

    def list_files(self):
        return self.files

    def allocation_block_offset(self, block):
        g = self.geometry
        return ((g.directory_start_block + g.directory_block_length) * LOGICAL_BLOCK_SIZE
                + block * g.allocation_block_size)

    def read_allocation_block(self, block):
        self.source.seek(self.allocation_block_offset(block))
        return read_exact(self.source, self.geometry.allocation_block_size)

    def read_fork(self, fork):
        """Return a BytesIO with the logical contents of fork."""
        if fork.logical_length == 0:
            return io.BytesIO(b"")

        chain = block_chain(self.allocation_map, fork.start_block)
        data = bytearray()
        for block in chain:
            data += self.read_allocation_block(block)
        if len(data) < fork.logical_length:
            raise FormatError(f"allocation chain from block {fork.start_block} holds "
                              f"{len(data)} bytes, fork needs {fork.logical_length}")
        return io.BytesIO(bytes(data[:fork.logical_length]))

    def _file(self, index):
        if not 0 <= index < len(self.files):
            raise IndexError(f"file index {index} out of range "
                             f"(volume has {len(self.files)} files)")
        return self.files[index]

    def open_data_fork(self, index):
        return self.read_fork(self._file(index).data_fork)

    def open_resource_fork(self, index):
        return self.read_fork(self._file(index).resource_fork)
