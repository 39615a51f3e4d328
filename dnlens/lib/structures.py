"""
Interfaces and classes to read structured data from in-memory buffers.
"""
from __future__ import annotations

import codecs
import dataclasses
import enum
import io

from typing import TYPE_CHECKING, Generic, TypeVar, cast
from uuid import UUID

if TYPE_CHECKING:
    from typing import Generator, Self

    from dnlens.lib.types import JSON, buf

R = TypeVar('R')


class EOF(EOFError):
    """
    While reading from a `dnlens.lib.structures.StructReader`, less bytes were available than
    requested. The exception contains the data from the incomplete read.
    """
    def __init__(self, size: int, rest: buf = B''):
        super().__init__(F'Unexpected end of buffer; attempted to read {size} bytes, but got only {len(rest)}.')
        self.rest = rest
        self.size = size

    def __bytes__(self):
        return bytes(self.rest)


class StreamDetour(Generic[R]):
    """
    A stream detour is used as a context manager to temporarily read from a different location
    in the stream and then return to the original offset when the context ends.
    """
    def __init__(self, stream: R, offset: int | None = None, whence: int = io.SEEK_SET):
        self.stream = stream
        self.offset = offset
        self.whence = whence

    def __enter__(self):
        self.cursor = self.stream.tell()
        if self.offset is not None:
            self.stream.seek(self.offset, self.whence)
        return self

    def __exit__(self, *args):
        self.stream.seek(self.cursor, io.SEEK_SET)


class StructReader:
    """
    A cursor over a read-only memoryview which provides methods to read little endian integers,
    strings and GUIDs. Reads past the end of the buffer raise `dnlens.lib.structures.EOF`.
    """
    __slots__ = '_data', '_cursor'

    def __init__(self, data: buf | StructReader):
        if isinstance(data, StructReader):
            data = data._data
        self._data = memoryview(data)
        self._cursor = 0

    def __len__(self):
        return len(self._data)

    @property
    def eof(self) -> bool:
        return self._cursor >= len(self._data)

    def tell(self) -> int:
        return self._cursor

    def skip(self, n: int):
        self._cursor += n

    def seek(self, offset: int, whence=io.SEEK_SET) -> int:
        if whence == io.SEEK_SET:
            if offset < 0:
                raise ValueError('no negative offsets allowed for SEEK_SET.')
            self._cursor = offset
        elif whence == io.SEEK_CUR:
            self._cursor += offset
        elif whence == io.SEEK_END:
            self._cursor = len(self._data) + offset
        self._cursor = max(self._cursor, 0)
        self._cursor = min(self._cursor, len(self._data))
        return self._cursor

    def seekrel(self, offset: int) -> int:
        return self.seek(offset, io.SEEK_CUR)

    def detour(self, offset: int | None = None, whence: int = io.SEEK_SET):
        return StreamDetour(self, offset, whence=whence)

    def getbuffer(self) -> memoryview:
        return self._data

    def read(self, size: int | None = None, peek: bool = False) -> memoryview:
        beginning = self._cursor
        if size is None or size < 0:
            end = len(self._data)
        else:
            end = min(beginning + size, len(self._data))
        if not peek:
            self._cursor = end
        return self._data[beginning:end]

    def read_exactly(self, size: int | None = None, peek: bool = False) -> memoryview:
        """
        Read bytes from the underlying buffer. Raises an exception of type `dnlens.lib.structures.EOF`
        when fewer data is available than requested via the `size` parameter.
        """
        data = self.read(size, peek)
        if size and len(data) < size:
            raise EOF(size, data)
        return data

    def read_bytes(self, size: int, peek: bool = False) -> bytes:
        return bytes(self.read_exactly(size, peek))

    def read_integer(self, size: int, peek: bool = False, signed: bool = False) -> int:
        """
        Read a little endian integer of the given size (in bits) from the buffer.
        """
        nbytes, rest = divmod(size, 8)
        if rest > 0:
            raise ValueError(F'Cannot read {size} bits, only multiples of 8 are possible.')
        data = self.read(nbytes, peek)
        if len(data) < nbytes:
            raise EOF(nbytes, data)
        return int.from_bytes(data, 'little', signed=signed)

    def read_byte(self, peek: bool = False) -> int:
        try:
            b = self._data[self._cursor]
        except IndexError:
            raise EOF(1)
        if not peek:
            self._cursor += 1
        return b

    u8 = read_byte

    def u16(self, peek: bool = False) -> int:
        return self.read_integer(16, peek)

    def u32(self, peek: bool = False) -> int:
        return self.read_integer(32, peek)

    def u64(self, peek: bool = False) -> int:
        return self.read_integer(64, peek)

    def i32(self, peek: bool = False) -> int:
        return self.read_integer(32, peek, signed=True)

    def byte_align(self, blocksize: int = 1):
        """
        Align the cursor at the given block size boundary.
        """
        if mod := -self._cursor % blocksize:
            self.seekrel(mod)

    def read_terminated_array(self, terminator: bytes) -> memoryview:
        data = self._data
        pos = start = self._cursor
        n = len(terminator)
        while start < len(data):
            window = bytes(data[start:start + 0x100])
            if (k := window.find(terminator)) >= 0:
                break
            start += 0x100 - n + 1
        else:
            raise EOF(len(data) - pos + n)
        result = self.read_exactly(start + k - pos)
        self.skip(n)
        return result

    def read_c_string(self, encoding: str | None = None) -> str | memoryview:
        data = self.read_terminated_array(B'\0')
        if encoding is not None:
            return codecs.decode(data, encoding)
        return data

    def read_guid(self) -> UUID:
        return UUID(bytes_le=self.read_bytes(16))


class FlagAccessMixin:
    """
    This class can be mixed into an `enum.IntFlag` so that flags can be accessed as follows:

        class Flags(FlagAccessMixin, enum.IntFlag):
            Interface = 0x20
            Abstract = 0x80

        if Flags(0xA0).Abstract:
            ...

    Flag values are represented by their names.
    """
    def __getattribute__(self, name: str):
        if not isinstance(self, enum.IntFlag):
            raise RuntimeError
        if not name.startswith('_'):
            try:
                flag = self.__class__[name]
            except KeyError:
                pass
            else:
                return flag in self
        return super().__getattribute__(name)

    def __iter__(self) -> Generator[Self]:
        if not isinstance(self, enum.IntFlag):
            raise RuntimeError
        for flag in self.__class__:
            if flag in self:
                yield flag

    def __repr__(self):
        if not isinstance(self, enum.IntFlag):
            raise RuntimeError
        if name := self.name:
            return name
        return super().__repr__()


def struct_to_json(o, codec: str | None = None) -> JSON:
    """
    Attempt to convert a dataclass, named tuple or an object with a `__json__` method to a JSON
    compatible representation.
    """
    if o is None:
        return o
    try:
        return o.__json__()
    except AttributeError:
        pass
    if dataclasses.is_dataclass(o) and not isinstance(o, type):
        return {f.name: struct_to_json(getattr(o, f.name), codec) for f in dataclasses.fields(o) if not f.name.startswith('_')}
    if isinstance(o, tuple) and hasattr(o, '_asdict'):
        o = o._asdict()
    if isinstance(o, dict):
        return {k: struct_to_json(v, codec) for k, v in o.items()}
    if isinstance(o, (list, tuple)):
        return [struct_to_json(v, codec) for v in o]
    if isinstance(o, enum.IntFlag):
        return [option.name for option in o.__class__ if o & option == option]
    if isinstance(o, enum.IntEnum):
        return o.name
    if isinstance(o, UUID):
        return str(o)
    if isinstance(o, (memoryview, bytes, bytearray)):
        if codec is not None:
            return codecs.decode(o, codec)
        return bytes(o).hex()
    return cast('JSON', o)


__all__ = [
    'EOF',
    'FlagAccessMixin',
    'StreamDetour',
    'StructReader',
    'struct_to_json',
]
