"""
Locating the .NET metadata inside a PE image. The PE headers are parsed by LIEF; the CLR runtime
header (the data directory at index 14) points to the metadata root.

References:
  [1]: https://www.ntcore.com/files/dotnetformat.htm
"""
from __future__ import annotations

import enum

from uuid import UUID

from dnlens.lib import lief
from dnlens.lib.dotnet.errors import FormatError
from dnlens.lib.dotnet.heaps import DotNetStructReader
from dnlens.lib.dotnet.metadata import NetMetaData
from dnlens.lib.environment import logger
from dnlens.lib.structures import FlagAccessMixin
from dnlens.lib.types import buf

log = logger(__name__)


class ImageDataDirectory:
    def __init__(self, reader: DotNetStructReader):
        self.VirtualAddress = reader.u32()
        self.Size = reader.u32()


class NetDirectoryFlags(FlagAccessMixin, enum.IntFlag):
    IL_ONLY = 0b1
    REQUIRE_32BIT = 0b10
    IL_LIBRARY = 0b100
    STRONG_NAME_SIGNED = 0b1000
    NATIVE_ENTRYPOINT = 0b10000
    TRACK_DEBUG_DATA = 0b10000000000000000


class NetDirectory:
    def __init__(self, reader: DotNetStructReader):
        self.Size = reader.u32()
        self.MajorRuntimeVersion = reader.u16()
        self.MinorRuntimeVersion = reader.u16()
        self.MetaData = ImageDataDirectory(reader)
        self.Flags = reader.u32()
        self.EntryPointToken = reader.u32()
        self.Resources = ImageDataDirectory(reader)
        self.StringNameSignature = ImageDataDirectory(reader)
        self.CodeManagerTable = ImageDataDirectory(reader)
        self.VTableFixups = ImageDataDirectory(reader)
        self.ExportAddressTableJumps = ImageDataDirectory(reader)
        self.ManagedNativeHeader = ImageDataDirectory(reader)
        self.KnownFlags = NetDirectoryFlags(self.Flags)


class CodeView:
    """
    The RSDS record of a CodeView debug directory entry, which names the PDB of the module.
    """
    def __init__(self, guid: UUID, age: int, path: str):
        self.Guid = guid
        self.Age = age
        self.Path = path


_ARCHITECTURES = {
    'I386'  : 'x86',    # noqa
    'AMD64' : 'x64',    # noqa
    'ARM'   : 'ARM',    # noqa
    'ARM64' : 'ARM64',  # noqa
}

_SUBSYSTEMS = {
    'WINDOWS_CUI': 'Console',
    'WINDOWS_GUI': 'Windows GUI',
}


def is_likely_pe(data: buf) -> bool:
    """
    Tests whether the input data is likely a PE file by checking the first two bytes and the magic
    bytes at the beginning of what should be the NT header.
    """
    view = memoryview(data)
    if view[:2] != B'MZ' or len(view) < 0x40:
        return False
    offset = int.from_bytes(view[0x3C:0x40], 'little')
    return view[offset:offset + 4] == B'PE\0\0'


class DotNetImage:
    """
    Validates a PE image and indexes its .NET metadata. Raises a `dnlens.lib.dotnet.errors.FormatError`
    if the input is not a PE image or if it does not contain metadata.
    """
    def __init__(self, data: buf, pe: lief.PE.Binary | None = None):
        view = memoryview(data)
        if pe is None:
            if not is_likely_pe(view):
                raise FormatError(FormatError.NOT_AN_IMAGE)
            try:
                pe = lief.load_pe_fast(view)
            except Exception as E:
                raise FormatError(FormatError.NOT_AN_IMAGE) from E
        self.pe = pe
        self.data = view
        try:
            clr = pe.data_directory(lief.PE.DataDirectory.TYPES.CLR_RUNTIME_HEADER)
            if not clr.rva or not clr.size:
                raise FormatError(FormatError.NO_METADATA)
            self.head = NetDirectory(self._reader(clr.rva, clr.size))
            if not self.head.MetaData.VirtualAddress or not self.head.MetaData.Size:
                raise FormatError(FormatError.NO_METADATA)
            self.meta = NetMetaData(self._reader_from_dn(self.head.MetaData))
        except FormatError:
            raise
        except Exception as E:
            raise FormatError(FormatError.NO_METADATA) from E
        if self.meta.Tables is None:
            raise FormatError(FormatError.NO_METADATA)

    @property
    def tables(self):
        return self.meta.Tables

    @property
    def heaps(self):
        return self.meta.heaps

    @property
    def architecture(self) -> str:
        name = lief.enum_name(self.pe.header.machine)
        return _ARCHITECTURES.get(name, name)

    @property
    def subsystem(self) -> str | None:
        try:
            name = lief.enum_name(self.pe.optional_header.subsystem)
        except AttributeError:
            return None
        return _SUBSYSTEMS.get(name, name)

    @property
    def runtime_version(self) -> str:
        return self.meta.VersionString

    @property
    def codeview(self) -> CodeView | None:
        """
        The first CodeView entry of the debug directory that can be decoded, or `None`.
        """
        if not self.pe.has_debug:
            return None
        for entry in self.pe.debug:
            if entry.type != lief.PE.Debug.TYPES.CODEVIEW:
                continue
            try:
                guid = UUID(str(entry.guid))
                return CodeView(guid, entry.age, lief.string(entry.filename))
            except (AttributeError, ValueError) as E:
                log.debug(F'ignoring unreadable CodeView entry: {E!s}')
                continue
        return None

    def _reader_from_dn(self, dir: ImageDataDirectory):
        return self._reader(dir.VirtualAddress, dir.Size)

    def _reader(self, rva: int, size: int):
        start = self.pe.rva_to_offset(rva)
        end = start + size
        if start >= len(self.data):
            raise FormatError(FormatError.NO_METADATA)
        return DotNetStructReader(self.data[start:end])
