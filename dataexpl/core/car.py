# Copyright (c) Rich Connexions Ltd. All rights reserved.
# Licensed under the MIT License. See LICENSE for details.

"""Content archive (CAR) reading and writing.

A CARv1 stream is a varint-prefixed DAG-CBOR header
``{"roots": [CID, ...], "version": 1}`` followed by varint-prefixed
sections, each holding a binary CID immediately followed by the block
bytes.  A zero-length section marks the end of the stream.

A CARv2 file starts with a fixed 11-byte pragma and a 40-byte header that
locates an inner CARv1 payload; only that payload is used here, the
optional trailing index is ignored.

:class:`CarBlockSource` indexes section offsets once when opened and
verifies each block against its CID's multihash on every read, so a
tampered archive is detected even though the index is built from the
archive itself.
"""

import logging
import struct
from typing import Dict, Iterable, Iterator, List, Tuple

import dag_cbor
from dag_cbor.decoding import DAGCBORDecodingError
from multiformats import CID, varint

from dataexpl.core.dag import canonical_cid, decode_cbor
from dataexpl.core.exceptions import ArchiveIntegrityError, BlockNotFoundError

logger = logging.getLogger(__name__)

__all__ = [
    "CARV2_PRAGMA",
    "CarBlockSource",
    "open_single_root",
    "write_car",
]

CARV2_PRAGMA = bytes.fromhex("0aa16776657273696f6e02")
CARV2_HEADER_SIZE = 40

# 16 bytes of characteristics, then data offset, data size, index offset.
_CARV2_HEADER = struct.Struct("<16sQQQ")

# Binary CIDv0 is a bare sha2-256 multihash.
_CIDV0_PREFIX = b"\x12\x20"
_CIDV0_LENGTH = 34


def _read_varint(data: memoryview, offset: int) -> Tuple[int, int]:
    """Decode an unsigned varint at ``offset``; return (value, new offset)."""
    try:
        value, nbytes, _ = varint.decode_raw(data[offset:])
    except ValueError as exc:
        raise ArchiveIntegrityError.corrupt(offset, f"invalid varint: {exc}") from exc
    return value, offset + nbytes


def _cid_length(section: memoryview, offset: int) -> int:
    """Number of bytes taken by the binary CID at the start of ``section``."""
    if bytes(section[:2]) == _CIDV0_PREFIX:
        return _CIDV0_LENGTH

    pos = 0
    version, pos = _read_varint(section, pos)
    if version != 1:
        raise ArchiveIntegrityError.corrupt(offset, f"unsupported CID version {version}")
    _, pos = _read_varint(section, pos)  # codec
    _, pos = _read_varint(section, pos)  # multihash function
    digest_size, pos = _read_varint(section, pos)
    return pos + digest_size


class CarBlockSource:
    """Read-only, random-access block source over an in-memory archive.

    Use :meth:`from_bytes` to open one.  Blocks are returned only after
    their content hash has been checked against the requested CID.
    """

    def __init__(self, roots: List[CID], payload: memoryview, index: Dict[CID, Tuple[int, int]], version: int):
        self._roots = roots
        self._payload = payload
        self._index = index
        self.version = version

    @property
    def roots(self) -> List[CID]:
        return list(self._roots)

    @classmethod
    def from_bytes(cls, data: bytes) -> "CarBlockSource":
        """Open a CARv1 or CARv2 archive.

        Raises:
            ArchiveIntegrityError: Bad header, bad varint, bad CID or a
                truncated section.
        """
        view = memoryview(data)
        version = 1

        if bytes(view[:len(CARV2_PRAGMA)]) == CARV2_PRAGMA:
            version = 2
            header_end = len(CARV2_PRAGMA) + CARV2_HEADER_SIZE
            if len(view) < header_end:
                raise ArchiveIntegrityError.bad_header("truncated CARv2 header")
            _, data_offset, data_size, _ = _CARV2_HEADER.unpack(bytes(view[len(CARV2_PRAGMA):header_end]))
            if data_offset < header_end or data_offset + data_size > len(view):
                raise ArchiveIntegrityError.bad_header(
                    f"CARv2 payload [{data_offset}, {data_offset + data_size}) outside of {len(view)} bytes"
                )
            view = view[data_offset:data_offset + data_size]

        roots, offset = cls._read_header(view)
        index = cls._index_sections(view, offset)

        logger.debug("Opened CARv%d archive: %d roots, %d blocks", version, len(roots), len(index))
        return cls(roots, view, index, version)

    @staticmethod
    def _read_header(view: memoryview) -> Tuple[List[CID], int]:
        if len(view) == 0:
            raise ArchiveIntegrityError.bad_header("empty archive")
        length, offset = _read_varint(view, 0)
        if length == 0 or offset + length > len(view):
            raise ArchiveIntegrityError.bad_header(f"header length {length} exceeds archive")

        try:
            header = decode_cbor(bytes(view[offset:offset + length]))
        except (DAGCBORDecodingError, ValueError) as exc:
            raise ArchiveIntegrityError.bad_header(f"undecodable header: {exc}") from exc

        if not isinstance(header, dict):
            raise ArchiveIntegrityError.bad_header("header is not a map")
        if header.get("version") != 1:
            raise ArchiveIntegrityError.bad_header(f"unsupported version {header.get('version')!r}")
        roots = header.get("roots")
        if not isinstance(roots, list) or not all(isinstance(r, CID) for r in roots):
            raise ArchiveIntegrityError.bad_header("roots is not a list of CIDs")

        return roots, offset + length

    @staticmethod
    def _index_sections(view: memoryview, offset: int) -> Dict[CID, Tuple[int, int]]:
        index: Dict[CID, Tuple[int, int]] = {}
        total = len(view)

        while offset < total:
            start = offset
            length, offset = _read_varint(view, offset)
            if length == 0:
                # Zero-length section terminates the stream.
                break
            if offset + length > total:
                raise ArchiveIntegrityError.truncated(start, length, total - offset)

            section = view[offset:offset + length]
            cid_len = _cid_length(section, start)
            if cid_len > length:
                raise ArchiveIntegrityError.corrupt(start, "CID runs past the end of the section")
            try:
                cid = canonical_cid(CID.decode(bytes(section[:cid_len])))
            except (ValueError, KeyError) as exc:
                raise ArchiveIntegrityError.corrupt(start, f"invalid CID: {exc}") from exc

            index.setdefault(cid, (offset + cid_len, offset + length))
            offset += length

        return index

    def has(self, cid: CID) -> bool:
        return cid in self._index

    def get(self, cid: CID) -> bytes:
        """Return the verified block bytes for ``cid``.

        Raises:
            BlockNotFoundError: The archive does not hold the block.
            ArchiveIntegrityError: The block does not hash to ``cid``.
        """
        try:
            start, end = self._index[cid]
        except KeyError:
            raise BlockNotFoundError(str(cid)) from None

        data = bytes(self._payload[start:end])
        if cid.hashfun.digest(data) != cid.digest:
            raise ArchiveIntegrityError.hash_mismatch(str(cid))
        return data

    def __iter__(self) -> Iterator[CID]:
        return iter(self._index)

    def __len__(self) -> int:
        return len(self._index)


def open_single_root(data: bytes) -> CarBlockSource:
    """Open an archive that must declare exactly one root."""
    source = CarBlockSource.from_bytes(data)
    if len(source.roots) != 1:
        raise ArchiveIntegrityError.root_count(len(source.roots))
    return source


def write_car(roots: Iterable[CID], blocks: Iterable[Tuple[CID, bytes]]) -> bytes:
    """Serialize ``blocks`` as a CARv1 archive declaring ``roots``."""
    header = dag_cbor.encode({"roots": list(roots), "version": 1})
    out = bytearray(varint.encode(len(header)))
    out += header
    for cid, data in blocks:
        raw_cid = bytes(cid)
        out += varint.encode(len(raw_cid) + len(data))
        out += raw_cid
        out += data
    return bytes(out)
