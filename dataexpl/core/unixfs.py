# Copyright (c) Rich Connexions Ltd. All rights reserved.
# Licensed under the MIT License. See LICENSE for details.

"""DAG-PB and UnixFS protobuf codecs.

Message classes are built at import time from descriptors declared in code
(``merkledag.PBNode``/``PBLink`` and ``unixfs.pb.Data``) rather than from
generated ``_pb2`` modules, using a private descriptor pool so they never
collide with other protobuf users in the process.
"""

from enum import IntEnum
from typing import Iterable, Optional, Sequence, Tuple

from google.protobuf import descriptor_pb2, descriptor_pool, message_factory
from google.protobuf.message import DecodeError, Message

__all__ = [
    "UnixFSType",
    "PBNode",
    "PBLink",
    "UnixFSData",
    "DecodeError",
    "decode_pbnode",
    "encode_pbnode",
    "decode_unixfs",
    "encode_unixfs",
    "unixfs_file_size",
]


class UnixFSType(IntEnum):
    RAW = 0
    DIRECTORY = 1
    FILE = 2
    METADATA = 3
    SYMLINK = 4
    HAMT_SHARD = 5


_DATA_TYPE_NAMES = (
    ("Raw", UnixFSType.RAW),
    ("Directory", UnixFSType.DIRECTORY),
    ("File", UnixFSType.FILE),
    ("Metadata", UnixFSType.METADATA),
    ("Symlink", UnixFSType.SYMLINK),
    ("HAMTShard", UnixFSType.HAMT_SHARD),
)

_F = descriptor_pb2.FieldDescriptorProto


def _field(msg, name: str, number: int, ftype: int, label: int = _F.LABEL_OPTIONAL, type_name: str = "") -> None:
    f = msg.field.add(name=name, number=number, type=ftype, label=label)
    if type_name:
        f.type_name = type_name


def _merkledag_file() -> descriptor_pb2.FileDescriptorProto:
    fd = descriptor_pb2.FileDescriptorProto(name="merkledag.proto", package="merkledag", syntax="proto2")

    link = fd.message_type.add(name="PBLink")
    _field(link, "Hash", 1, _F.TYPE_BYTES)
    _field(link, "Name", 2, _F.TYPE_STRING)
    _field(link, "Tsize", 3, _F.TYPE_UINT64)

    node = fd.message_type.add(name="PBNode")
    _field(node, "Data", 1, _F.TYPE_BYTES)
    _field(node, "Links", 2, _F.TYPE_MESSAGE, _F.LABEL_REPEATED, ".merkledag.PBLink")
    return fd


def _unixfs_file() -> descriptor_pb2.FileDescriptorProto:
    fd = descriptor_pb2.FileDescriptorProto(name="unixfs.proto", package="unixfs.pb", syntax="proto2")

    data = fd.message_type.add(name="Data")
    enum = data.enum_type.add(name="DataType")
    for name, member in _DATA_TYPE_NAMES:
        enum.value.add(name=name, number=int(member))

    _field(data, "Type", 1, _F.TYPE_ENUM, _F.LABEL_REQUIRED, ".unixfs.pb.Data.DataType")
    _field(data, "Data", 2, _F.TYPE_BYTES)
    _field(data, "filesize", 3, _F.TYPE_UINT64)
    _field(data, "blocksizes", 4, _F.TYPE_UINT64, _F.LABEL_REPEATED)
    _field(data, "hashType", 5, _F.TYPE_UINT64)
    _field(data, "fanout", 6, _F.TYPE_UINT64)
    return fd


_pool = descriptor_pool.DescriptorPool()
_pool.AddSerializedFile(_merkledag_file().SerializeToString())
_pool.AddSerializedFile(_unixfs_file().SerializeToString())

PBLink = message_factory.GetMessageClass(_pool.FindMessageTypeByName("merkledag.PBLink"))
PBNode = message_factory.GetMessageClass(_pool.FindMessageTypeByName("merkledag.PBNode"))
UnixFSData = message_factory.GetMessageClass(_pool.FindMessageTypeByName("unixfs.pb.Data"))


# =============================================================================
# DAG-PB
# =============================================================================

def decode_pbnode(raw: bytes) -> Message:
    """Parse a DAG-PB block.  Raises ``DecodeError`` on malformed input."""
    node = PBNode()
    node.ParseFromString(raw)
    return node


def encode_pbnode(links: Iterable[Tuple[bytes, str, int]], data: Optional[bytes] = None) -> bytes:
    """Serialize a DAG-PB node in canonical form (links before data).

    Args:
        links: ``(binary CID, name, cumulative size)`` triples
        data: Node payload; omitted when None
    """
    with_links = PBNode()
    for hash_, name, tsize in links:
        with_links.Links.add(Hash=hash_, Name=name, Tsize=tsize)
    with_data = PBNode()
    if data is not None:
        with_data.Data = data
    # Concatenated protobuf messages merge; this fixes field order on the wire.
    return with_links.SerializeToString() + with_data.SerializeToString()


# =============================================================================
# UnixFS
# =============================================================================

def decode_unixfs(data: bytes) -> Message:
    """Parse a UnixFS ``Data`` message.  Raises ``DecodeError`` on malformed input."""
    fs = UnixFSData()
    fs.ParseFromString(data)
    return fs


def encode_unixfs(
    kind: UnixFSType,
    data: Optional[bytes] = None,
    filesize: Optional[int] = None,
    blocksizes: Sequence[int] = (),
    fanout: Optional[int] = None,
    hash_type: Optional[int] = None,
) -> bytes:
    fs = UnixFSData(Type=int(kind))
    if data is not None:
        fs.Data = data
    if filesize is not None:
        fs.filesize = filesize
    fs.blocksizes.extend(blocksizes)
    if fanout is not None:
        fs.fanout = fanout
    if hash_type is not None:
        fs.hashType = hash_type
    return fs.SerializeToString()


def unixfs_file_size(fs: Message) -> int:
    """Logical byte size of a UnixFS file node."""
    if fs.HasField("filesize"):
        return fs.filesize
    return len(fs.Data) + sum(fs.blocksizes)
