"""
Binary model stream with begin/end section markers.

Encoding (little-endian):

- unsigned integers: 8 bytes
- booleans: 1 byte
- floats: 8 bytes IEEE-754
- strings: byte length (unsigned integer) followed by UTF-8 data
- section markers: strings
- matrices: dtype name (string), rows, cols, row-major raw data
"""

from __future__ import annotations

import io
import struct
from pathlib import Path
from typing import BinaryIO, Iterable, List, Optional, Union

import numpy as np

from compnet.errors import FormatError

_UINT = struct.Struct("<Q")
_BOOL = struct.Struct("<?")
_FLOAT = struct.Struct("<d")
_MAX_MARKER_LENGTH = 64

_MATRIX_DTYPES = {
    "float32": np.dtype("<f4"),
    "float64": np.dtype("<f8"),
}


class ModelStream:
    """Reader/writer over a seekable binary file object."""

    def __init__(self, fh: BinaryIO, *, name: str = "<stream>", owns: bool = False) -> None:
        self._fh = fh
        self.name = name
        self._owns = owns

    @classmethod
    def open(cls, path: Union[str, Path], mode: str = "rb") -> "ModelStream":
        if mode not in ("rb", "wb"):
            raise ValueError(f"Unsupported model stream mode: {mode!r}")
        return cls(open(path, mode), name=str(path), owns=True)

    def close(self) -> None:
        if self._owns:
            self._fh.close()

    def flush(self) -> None:
        self._fh.flush()

    def __enter__(self) -> "ModelStream":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    # ------------------------------------------------------------------
    # writing
    # ------------------------------------------------------------------

    def write_int(self, value: int) -> None:
        if value < 0:
            raise ValueError(f"Cannot write negative count {value}.")
        self._fh.write(_UINT.pack(int(value)))

    def write_bool(self, value: bool) -> None:
        self._fh.write(_BOOL.pack(bool(value)))

    def write_float(self, value: float) -> None:
        self._fh.write(_FLOAT.pack(float(value)))

    def write_string(self, value: str) -> None:
        data = value.encode("utf-8")
        self.write_int(len(data))
        self._fh.write(data)

    def write_strings(self, values: Iterable[str]) -> None:
        values = list(values)
        self.write_int(len(values))
        for value in values:
            self.write_string(value)

    def write_matrix(self, matrix: np.ndarray) -> None:
        matrix = np.asarray(matrix)
        if matrix.ndim != 2:
            raise ValueError(f"Expected a 2-D matrix, got shape {matrix.shape}.")
        dtype_name = matrix.dtype.name
        if dtype_name not in _MATRIX_DTYPES:
            raise ValueError(f"Unsupported matrix dtype `{dtype_name}`.")
        self.write_string(dtype_name)
        self.write_int(matrix.shape[0])
        self.write_int(matrix.shape[1])
        self._fh.write(np.ascontiguousarray(matrix, dtype=_MATRIX_DTYPES[dtype_name]).tobytes())

    def put_marker(self, marker: str) -> None:
        self.write_string(marker)

    # ------------------------------------------------------------------
    # reading
    # ------------------------------------------------------------------

    def _remaining(self) -> int:
        position = self._fh.tell()
        end = self._fh.seek(0, io.SEEK_END)
        self._fh.seek(position)
        return end - position

    def _read_exact(self, size: int) -> bytes:
        # Lengths come from the stream itself; bound them before reading.
        available = self._remaining()
        if size > available:
            raise FormatError(
                f"{self.name}: length {size} at offset {self._fh.tell()} "
                f"exceeds the {available} bytes left in the stream."
            )
        data = self._fh.read(size)
        if len(data) != size:
            raise FormatError(
                f"{self.name}: unexpected end of stream "
                f"(wanted {size} bytes, got {len(data)})."
            )
        return data

    def read_int(self) -> int:
        return _UINT.unpack(self._read_exact(_UINT.size))[0]

    def read_bool(self) -> bool:
        return _BOOL.unpack(self._read_exact(_BOOL.size))[0]

    def read_float(self) -> float:
        return _FLOAT.unpack(self._read_exact(_FLOAT.size))[0]

    def read_string(self) -> str:
        size = self.read_int()
        data = self._read_exact(size)
        try:
            return data.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise FormatError(f"{self.name}: invalid string data.") from exc

    def read_strings(self) -> List[str]:
        return [self.read_string() for _ in range(self.read_int())]

    def read_matrix(self) -> np.ndarray:
        dtype_name = self.read_string()
        dtype = _MATRIX_DTYPES.get(dtype_name)
        if dtype is None:
            raise FormatError(f"{self.name}: unknown matrix dtype `{dtype_name}`.")
        rows = self.read_int()
        cols = self.read_int()
        data = self._read_exact(rows * cols * dtype.itemsize)
        return np.frombuffer(data, dtype=dtype).reshape(rows, cols).astype(dtype_name)

    def _read_marker_candidate(self) -> Optional[str]:
        # Whatever follows may not be a string at all; never trust its length.
        raw = self._fh.read(_UINT.size)
        if len(raw) != _UINT.size:
            return None
        size = _UINT.unpack(raw)[0]
        if size > _MAX_MARKER_LENGTH:
            return None
        data = self._fh.read(size)
        if len(data) != size:
            return None
        try:
            return data.decode("utf-8")
        except UnicodeDecodeError:
            return None

    def try_get_marker(self, marker: str) -> bool:
        """Consume ``marker`` if it is next in the stream; otherwise rewind."""
        position = self._fh.tell()
        if self._read_marker_candidate() == marker:
            return True
        self._fh.seek(position)
        return False

    def get_marker(self, marker: str) -> None:
        position = self._fh.tell()
        found = self._read_marker_candidate()
        if found != marker:
            self._fh.seek(position)
            raise FormatError(
                f"{self.name}: expected section marker `{marker}` at offset {position}"
                + (f", found `{found}`." if found is not None else ".")
            )


def memory_stream(data: bytes = b"") -> ModelStream:
    """In-memory stream, mostly useful for tests and round trips."""
    return ModelStream(io.BytesIO(data), name="<memory>")
