"""Persisting state dicts.

File layout (little endian):

    magic b"MTRE" | uint8 version | uint32 entry count
    per entry: uint32 key length | key (utf-8)
               uint8 dtype length | dtype name (ascii)
               uint8 ndim | uint64 per dimension
               raw C-contiguous bytes
"""

from __future__ import annotations

import logging
import os
import struct
import tempfile
from collections import OrderedDict
from collections.abc import Mapping
from typing import TYPE_CHECKING, Any, BinaryIO

import numpy as np

from .backend import to_host
from .tensor import Tensor, tensor

if TYPE_CHECKING:
    from pathlib import Path

logger = logging.getLogger(__name__)

FILE_SUFFIX = ".mtree"

_MAGIC = b"MTRE"
_VERSION = 1
_SINGLE_KEY = "__single__"


def _check_path(file_path: str | Path) -> str:
    path = os.fspath(file_path)
    if not path.endswith(FILE_SUFFIX):
        raise ValueError(f'file_path must end with "{FILE_SUFFIX}", got "{path}"')
    return path


def _read_exact(f: BinaryIO, num_bytes: int) -> bytes:
    data = f.read(num_bytes)
    if len(data) != num_bytes:
        raise ValueError(f"Truncated file: expected {num_bytes} bytes, got {len(data)}")
    return data


def _write_entry(f: BinaryIO, key: str, value: Any) -> None:
    arr = to_host(value)
    # ascontiguousarray would turn 0-d arrays into shape (1,)
    if not arr.flags["C_CONTIGUOUS"]:
        arr = np.ascontiguousarray(arr)

    key_bytes = key.encode("utf-8")
    f.write(struct.pack("<I", len(key_bytes)))
    f.write(key_bytes)

    dtype_bytes = arr.dtype.name.encode("ascii")
    f.write(struct.pack("<B", len(dtype_bytes)))
    f.write(dtype_bytes)

    f.write(struct.pack("<B", arr.ndim))
    f.writelines(struct.pack("<Q", dim) for dim in arr.shape)

    f.write(arr.astype(arr.dtype.newbyteorder("<"), copy=False).tobytes())


def _read_entry(f: BinaryIO) -> tuple[str, Tensor]:
    key_length = struct.unpack("<I", _read_exact(f, 4))[0]
    key = _read_exact(f, key_length).decode("utf-8")

    dtype_length = struct.unpack("<B", _read_exact(f, 1))[0]
    dtype = np.dtype(_read_exact(f, dtype_length).decode("ascii")).newbyteorder("<")

    ndim = struct.unpack("<B", _read_exact(f, 1))[0]
    shape = tuple(struct.unpack("<Q", _read_exact(f, 8))[0] for _ in range(ndim))

    num_bytes = int(np.prod(shape)) * dtype.itemsize
    arr = np.frombuffer(_read_exact(f, num_bytes), dtype=dtype).reshape(shape)
    return key, tensor(arr.astype(dtype.newbyteorder("="), copy=False))


def save(data: Tensor | Mapping[str, Tensor], file_path: str | Path) -> None:
    """Save a Tensor or a name -> Tensor mapping (e.g. a state dict) to disk.

    The file is written to a temporary file next to `file_path` first and
    then moved into place, so readers never observe a partial file.

    Args:
        data (Tensor | Mapping[str, Tensor]): The data to save.
        file_path (str | Path): Destination, must end with ".mtree".

    Raises:
        ValueError: If a mapping with non-array values is passed.
        ValueError: If file_path doesn't end with ".mtree".
    """
    path = _check_path(file_path)

    if isinstance(data, Mapping):
        entries = data
        for key, value in entries.items():
            if not isinstance(value, np.ndarray | Tensor):
                raise ValueError(
                    f'All values must be Tensors, found "{type(value).__name__}" for "{key}".'
                )
    else:
        entries = OrderedDict([(_SINGLE_KEY, data)])

    directory = os.path.dirname(os.path.abspath(path))
    fd, tmp_path = tempfile.mkstemp(prefix=".tmp-", suffix=FILE_SUFFIX, dir=directory)
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(_MAGIC)
            f.write(struct.pack("<B", _VERSION))
            f.write(struct.pack("<I", len(entries)))
            for key, value in entries.items():
                _write_entry(f, key, value)
        os.replace(tmp_path, path)
    except BaseException:
        os.unlink(tmp_path)
        raise
    logger.debug('Saved %d tensor(s) to "%s"', len(entries), path)


def load(file_path: str | Path) -> Tensor | OrderedDict[str, Tensor]:
    """Load data written by `save`.

    Args:
        file_path (str | Path): Source, must end with ".mtree".

    Raises:
        ValueError: If file_path doesn't end with ".mtree".
        ValueError: If the file has invalid magic bytes, an unsupported
            version or is truncated.

    Returns:
        Tensor | OrderedDict[str, Tensor]: A single Tensor if one was
            saved, otherwise the mapping in its saved order.
    """
    path = _check_path(file_path)

    with open(path, "rb") as f:
        magic = f.read(len(_MAGIC))
        if magic != _MAGIC:
            raise ValueError(f"Invalid file format. Expected {_MAGIC!r} magic bytes, got {magic!r}")

        version = struct.unpack("<B", _read_exact(f, 1))[0]
        if version != _VERSION:
            raise ValueError(f"Unsupported version {version}. Expected {_VERSION}")

        num_tensors = struct.unpack("<I", _read_exact(f, 4))[0]
        tensors: OrderedDict[str, Tensor] = OrderedDict(
            _read_entry(f) for _ in range(num_tensors)
        )

    logger.debug('Loaded %d tensor(s) from "%s"', len(tensors), path)
    if len(tensors) == 1 and _SINGLE_KEY in tensors:
        return tensors[_SINGLE_KEY]
    return tensors


__all__ = [
    "FILE_SUFFIX",
    "load",
    "save",
]
