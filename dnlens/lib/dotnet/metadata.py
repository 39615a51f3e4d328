"""
Parsing of the metadata root (the `BSJB` header) and its stream directory. The same layout is used
by the metadata of a .NET module and by a portable PDB file, which additionally contains a `#Pdb`
stream.
"""
from __future__ import annotations

import enum

from uuid import UUID

from dnlens.lib.dotnet.errors import ParserException
from dnlens.lib.dotnet.heaps import (
    DotNetStructReader,
    HeapAccessor,
    NetMetaDataStreamBlob,
    NetMetaDataStreamGUID,
    NetMetaDataStreamStrA,
    NetMetaDataStreamStrU,
)
from dnlens.lib.dotnet.tables import BitMask, NetMetaDataTables
from dnlens.lib.environment import logger

log = logger(__name__)


class InvalidSignature(ParserException):
    def __init__(self):
        super().__init__('Metadata parsing failed: Invalid signature.')


class StreamNames(str, enum.Enum):
    TablesTilde = '#~'
    TablesDash = '#-'
    Strings = '#Strings'
    US = '#US'
    GUID = '#GUID'
    Blob = '#Blob'
    Pdb = '#Pdb'


class NetMetaDataStreamEntry:
    def __init__(self, reader: DotNetStructReader):
        self.VirtualAddress = reader.u32()
        self.Size = reader.u32()
        self.Name = reader.read_dn_null_terminated_string(align=4)

    def __repr__(self):
        return F'{self.Name}@{self.VirtualAddress:#x}:{self.Size:#x}'


class PdbStream:
    """
    The `#Pdb` stream of a portable PDB. The first 16 bytes of the PDB id are the GUID that is
    also recorded in the CodeView debug directory entry of the module.
    """
    def __init__(self, reader: DotNetStructReader):
        self.Id = reader.read_bytes(20)
        self.Guid = UUID(bytes_le=self.Id[:16])
        self.Stamp = int.from_bytes(self.Id[16:], 'little')
        self.EntryPoint = reader.u32()
        self.ReferencedTables = BitMask(reader.u64())
        self.RowCount = {k: reader.u32() for k in self.ReferencedTables}


class NetMetaDataStreams:
    Tables: NetMetaDataTables | None
    Pdb: PdbStream | None
    heaps: HeapAccessor

    def __init__(self, reader: DotNetStructReader, meta: NetMetaData):
        self.Tables = None
        self.Pdb = None
        found = {}
        with reader.detour():
            TableName = StreamNames.TablesTilde
            for se in meta.StreamInfo:
                if se.Name == TableName:
                    break
                if se.Name == StreamNames.TablesDash:
                    TableName = StreamNames.TablesDash
                    break
            for name in (
                StreamNames.Blob,
                StreamNames.GUID,
                StreamNames.US,
                StreamNames.Strings,
                StreamNames.Pdb,
                TableName,
            ):
                for entry in meta.StreamInfo:
                    if entry.Name.upper() != name.upper():
                        continue
                    try:
                        reader.seek(entry.VirtualAddress)
                        stream = DotNetStructReader(reader.read_exactly(entry.Size))
                    except EOFError:
                        log.info(F'metadata stream {entry!r} exceeds the metadata region')
                        continue
                    if name == TableName:
                        self.heaps = HeapAccessor(
                            found.get(StreamNames.Strings),
                            found.get(StreamNames.Blob),
                            found.get(StreamNames.GUID),
                            found.get(StreamNames.US),
                        )
                        rows = self.Pdb.RowCount if self.Pdb else None
                        self.Tables = NetMetaDataTables(stream, self.heaps, rows)
                    elif name == StreamNames.Pdb:
                        self.Pdb = PdbStream(stream)
                    elif name == StreamNames.Strings:
                        found[name] = NetMetaDataStreamStrA(stream.getbuffer())
                    elif name == StreamNames.US:
                        found[name] = NetMetaDataStreamStrU(stream.getbuffer())
                    elif name == StreamNames.Blob:
                        found[name] = NetMetaDataStreamBlob(stream.getbuffer())
                    elif name == StreamNames.GUID:
                        found[name] = NetMetaDataStreamGUID(stream.getbuffer())
                    break
        if self.Tables is None:
            self.heaps = HeapAccessor(
                found.get(StreamNames.Strings),
                found.get(StreamNames.Blob),
                found.get(StreamNames.GUID),
                found.get(StreamNames.US),
            )


class NetMetaData:
    """
    The metadata root. Its signature is `BSJB` and it is followed by a version string and the
    directory of metadata streams, whose offsets are relative to the root.
    """
    def __init__(self, reader: DotNetStructReader):
        try:
            self.Signature = reader.u32()
        except EOFError:
            raise InvalidSignature
        if self.Signature != 0x424A5342:
            raise InvalidSignature
        self.MajorVersion = reader.u16()
        self.MinorVersion = reader.u16()
        self._Reserved = reader.u32()
        size = reader.u32()
        self.VersionString = reader.read_dn_string_primitive(size, align=4)
        self.Flags = reader.u16()
        self.StreamCount = reader.u16()
        self.StreamInfo = [NetMetaDataStreamEntry(reader) for _ in range(self.StreamCount)]
        self.Streams = NetMetaDataStreams(reader, meta=self)

    @property
    def Tables(self) -> NetMetaDataTables | None:
        return self.Streams.Tables

    @property
    def heaps(self) -> HeapAccessor:
        return self.Streams.heaps
