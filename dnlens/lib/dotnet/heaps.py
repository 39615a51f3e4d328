"""
Random access to the metadata heaps `#Strings`, `#Blob`, `#US` and `#GUID`, and the reader for the
compressed integers that prefix heap entries and make up signatures. The encoding is described in
ECMA-335, partition II, section 23.2.
"""
from __future__ import annotations

import abc
import codecs

from typing import Dict, Optional, TypeVar
from uuid import UUID

from dnlens.lib.dotnet.errors import DecodeError, ParserException
from dnlens.lib.environment import logger
from dnlens.lib.structures import StructReader
from dnlens.lib.types import buf

N = TypeVar('N', str, bytes, Optional[bytes], Optional[UUID])

log = logger(__name__)


class DotNetStructReader(StructReader):

    def _dn_raise(self, msg):
        raise DecodeError(F'At offset {self.tell():#08x}: {msg}')

    def read_dn_length_prefix(self) -> int:
        """
        Read a compressed unsigned integer: One byte for values up to 0x7F, two big endian bytes
        with the prefix `10` for values up to 0x3FFF, and four big endian bytes with the prefix
        `110` for values up to 0x1FFFFFFF.
        """
        size = self.u8()
        if not size & 0x80:
            return size
        elif not size & 0x40:
            size = size & 0x3f
            size = size << 8 | self.u8()
            return size
        elif not size & 0x20:
            size = size & 0x1f
            size = size << 8 | self.u8()
            size = size << 8 | self.u8()
            size = size << 8 | self.u8()
            return size
        else:
            self._dn_raise(F'Invalid length prefix {size:#04x}.')

    read_dn_unsigned_integer = read_dn_length_prefix

    def read_dn_signed_integer(self) -> int:
        """
        Read a compressed signed integer. The value is stored rotated left by one bit within the
        width that was chosen for its unsigned encoding.
        """
        start = self.tell()
        value = self.read_dn_length_prefix()
        width = self.tell() - start
        negative = value & 1
        value >>= 1
        if negative:
            value -= {1: 0x40, 2: 0x2000, 4: 0x10000000}[width]
        return value

    def read_dn_blob(self, size: int | None = None) -> bytes:
        if size is None:
            size = self.read_dn_length_prefix()
        return self.read_bytes(size)

    def read_dn_unicode_string(self) -> str:
        data = self.read_dn_blob()
        size = len(data)
        if not size:
            return ''
        if size % 2 == 0:
            raise ParserException('Unicode String without terminator.')
        return codecs.decode(data[:-1], 'utf-16le')

    def read_dn_utf8_string(self) -> str:
        data = self.read_terminated_array(B'\0')
        try:
            return codecs.decode(data, 'utf8')
        except UnicodeDecodeError:
            return codecs.decode(data, 'latin1')

    def read_dn_null_terminated_string(self, align: int = 1, codec='latin1') -> str:
        result = self.read_c_string(codec)
        self.byte_align(align)
        return result

    def read_dn_string_primitive(self, size: int, align: int = 1, codec: str = 'latin1') -> str:
        data = self.read_exactly(size)
        if align > 1:
            self.byte_align(align)
        return codecs.decode(data, codec).rstrip('\0')


def read_packed_length(data: buf, offset: int = 0) -> tuple[int, int] | None:
    """
    Decode the compressed unsigned integer at the given offset. The return value is a tuple of the
    decoded value and the number of bytes that were consumed, or `None` if the encoding is invalid
    or runs past the end of the buffer.
    """
    reader = DotNetStructReader(data)
    reader.seek(offset)
    try:
        value = reader.read_dn_length_prefix()
    except (EOFError, DecodeError):
        return None
    return value, reader.tell() - offset


class NetMetaDataStream(Dict[int, N], abc.ABC):
    """
    A metadata heap. Entries are decoded on first access at their heap offset and cached. Any
    offset that cannot be decoded maps to the `default` value of the heap.
    """
    default: N

    def __init__(self, data: buf):
        dict.__init__(self)
        self._reader = DotNetStructReader(data)

    @abc.abstractmethod
    def stream_next(self) -> N:
        raise NotImplementedError

    def __missing__(self, offset: int) -> N:
        if offset < 0 or offset >= len(self._reader):
            log.debug(F'heap offset {offset:#x} is out of range for {self.__class__.__name__}')
            return self.default
        try:
            self._reader.seek(offset)
            item = self.stream_next()
        except (EOFError, ParserException, UnicodeDecodeError) as E:
            log.debug(F'failed to decode {self.__class__.__name__} entry at {offset:#x}: {E!s}')
            return self.default
        self[offset] = item
        return item


class NetMetaDataStreamStrA(NetMetaDataStream[str]):
    def stream_next(self):
        return self._reader.read_dn_utf8_string()
    default = ''


class NetMetaDataStreamStrU(NetMetaDataStream[str]):
    def stream_next(self):
        return self._reader.read_dn_unicode_string()
    default = ''


class NetMetaDataStreamGUID(NetMetaDataStream[Optional[UUID]]):
    def stream_next(self):
        return self._reader.read_guid()
    default = None

    def guid(self, index: int) -> UUID | None:
        """
        GUID heap indices are 1-based and count 16-byte blocks; index 0 denotes no GUID.
        """
        if index <= 0:
            return None
        return self[(index - 1) << 4]


class NetMetaDataStreamBlob(NetMetaDataStream[Optional[bytes]]):
    def stream_next(self):
        return self._reader.read_dn_blob()
    default = None


class HeapAccessor:
    """
    Decodes heap references of a metadata table stream. Heaps that are missing from the metadata
    behave like empty heaps.
    """
    def __init__(
        self,
        strings: NetMetaDataStreamStrA | None = None,
        blobs: NetMetaDataStreamBlob | None = None,
        guids: NetMetaDataStreamGUID | None = None,
        user_strings: NetMetaDataStreamStrU | None = None,
    ):
        self.Strings = strings if strings is not None else NetMetaDataStreamStrA(B'\0')
        self.Blob = blobs if blobs is not None else NetMetaDataStreamBlob(B'\0')
        self.GUID = guids if guids is not None else NetMetaDataStreamGUID(B'')
        self.US = user_strings if user_strings is not None else NetMetaDataStreamStrU(B'\0')

    def string(self, index: int) -> str:
        return self.Strings[index]

    def blob(self, index: int) -> bytes | None:
        return self.Blob[index]

    def guid(self, index: int) -> UUID | None:
        return self.GUID.guid(index)

    def user_string(self, index: int) -> str:
        return self.US[index]
