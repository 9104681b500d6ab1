"""
etcd storage schema: bucket names, revision keys and value messages.

Key bucket layout:
    key:   <main:8 BE> '_' <sub:8 BE> ['t' if tombstone]
    value: mvccpb.KeyValue (protobuf)

Lease bucket layout:
    key:   <lease id:8 BE>
    value: leasepb.Lease (protobuf)

The protobuf messages are built from descriptors at import time so that
no generated code has to be vendored; the wire format is what etcd writes.
"""

from __future__ import annotations

import struct
from dataclasses import dataclass

from google.protobuf import descriptor_pb2, descriptor_pool, message_factory

KEY_BUCKET = b"key"
META_BUCKET = b"meta"
LEASE_BUCKET = b"lease"

CONSISTENT_INDEX_KEY = b"consistent_index"
TERM_KEY = b"term"
SCHEDULED_COMPACT_KEY = b"scheduledCompactRev"
FINISHED_COMPACT_KEY = b"finishedCompactRev"

REV_BYTES_LEN = 17
MARKED_REV_BYTES_LEN = REV_BYTES_LEN + 1
TOMBSTONE_MARK = b"t"

_REVISION = struct.Struct(">QcQ")
_UINT64 = struct.Struct(">Q")


@dataclass(frozen=True, order=True)
class Revision:
    """A store revision: main is the transaction, sub the change within it."""

    main: int
    sub: int = 0

    def to_bytes(self) -> bytes:
        return _REVISION.pack(self.main, b"_", self.sub)

    def to_tombstone_bytes(self) -> bytes:
        return self.to_bytes() + TOMBSTONE_MARK

    @classmethod
    def from_bytes(cls, data: bytes) -> Revision:
        """Decode revision bytes, with or without a tombstone mark.

        Raises:
            ValueError: If data is not a revision key
        """
        if len(data) not in (REV_BYTES_LEN, MARKED_REV_BYTES_LEN):
            raise ValueError(f"invalid revision key length {len(data)}")
        main, sep, sub = _REVISION.unpack_from(data, 0)
        if sep != b"_":
            raise ValueError(f"invalid revision separator {sep!r}")
        return cls(main=main, sub=sub)

    def __str__(self) -> str:
        return f"{self.main}_{self.sub}"


def is_tombstone(key: bytes) -> bool:
    return len(key) == MARKED_REV_BYTES_LEN and key[-1:] == TOMBSTONE_MARK


def decode_uint64(data: bytes) -> int:
    return _UINT64.unpack(data)[0]


def encode_uint64(value: int) -> bytes:
    return _UINT64.pack(value)


def _build_messages() -> tuple[type, type]:
    int64 = descriptor_pb2.FieldDescriptorProto.TYPE_INT64
    raw = descriptor_pb2.FieldDescriptorProto.TYPE_BYTES
    optional = descriptor_pb2.FieldDescriptorProto.LABEL_OPTIONAL

    pool = descriptor_pool.DescriptorPool()

    def add_file(name: str, package: str, message: str, fields: list[tuple[str, int, int]]) -> type:
        proto = descriptor_pb2.FileDescriptorProto(name=name, package=package, syntax="proto3")
        msg = proto.message_type.add(name=message)
        for field_name, number, field_type in fields:
            msg.field.add(name=field_name, number=number, type=field_type, label=optional)
        pool.AddSerializedFile(proto.SerializeToString())
        return message_factory.GetMessageClass(pool.FindMessageTypeByName(f"{package}.{message}"))

    key_value = add_file(
        "mvccpb/kv.proto",
        "mvccpb",
        "KeyValue",
        [
            ("key", 1, raw),
            ("create_revision", 2, int64),
            ("mod_revision", 3, int64),
            ("version", 4, int64),
            ("value", 5, raw),
            ("lease", 6, int64),
        ],
    )
    lease = add_file(
        "leasepb/lease.proto",
        "leasepb",
        "Lease",
        [
            ("ID", 1, int64),
            ("TTL", 2, int64),
            ("RemainingTTL", 3, int64),
        ],
    )
    return key_value, lease


KeyValue, Lease = _build_messages()
