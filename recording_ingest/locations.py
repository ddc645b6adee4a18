"""
RecordingLocation values and their single-string encoding.

The encoded form is what ``call_records.recording_path`` stores and what report/export
tooling reads, so it must stay stable: a remote object key carries the ``remote:`` marker,
anything else is a local filesystem path.
"""

from dataclasses import dataclass
from typing import Union

REMOTE_PREFIX = "remote:"
# Written by earlier deployments; decoded, never emitted.
LEGACY_REMOTE_PREFIX = "s3:"


@dataclass(frozen=True)
class LocalLocation:
    path: str

    def encode(self) -> str:
        return self.path


@dataclass(frozen=True)
class RemoteLocation:
    object_key: str

    def encode(self) -> str:
        return f"{REMOTE_PREFIX}{self.object_key}"


RecordingLocation = Union[LocalLocation, RemoteLocation]


def parse_location(value: str) -> RecordingLocation:
    if not value:
        raise ValueError("Empty recording location")
    for prefix in (REMOTE_PREFIX, LEGACY_REMOTE_PREFIX):
        if value.startswith(prefix):
            key = value[len(prefix):]
            if not key:
                raise ValueError(f"Remote recording location without a key: {value!r}")
            return RemoteLocation(key)
    return LocalLocation(value)
