"""
Parsing of the metadata table stream `#~` (or its uncompressed variant `#-`). Every table of
ECMA-335 and of the portable PDB format is described by a row schema below; the column types
determine the width of each column:

- `UInt16` and `UInt32` are plain integers,
- `str`, `bytes` and `UUID` are indices into the string, blob and GUID heap, which are resolved
  when the row is read,
- `Index[T]` is an index into table `T`, and `Index[Union[...]]` is a coded index into one of
  several tables.

References:
  [1]: ECMA-335, partition II, section 22 and section 24.2.6
  [2]: https://github.com/dotnet/runtime/blob/main/docs/design/specs/PortablePdb-Metadata.md
"""
from __future__ import annotations

import bisect
import enum
import functools

from typing import (
    Generic,
    NamedTuple,
    NewType,
    Optional,
    TypeVar,
    Union,
    get_args,
    get_origin,
    get_type_hints,
    overload,
)
from uuid import UUID

from dnlens.lib.dotnet.errors import ParserException
from dnlens.lib.dotnet.heaps import DotNetStructReader, HeapAccessor
from dnlens.lib.environment import logger
from dnlens.lib.structures import FlagAccessMixin

R = TypeVar('R')

UInt32 = NewType('UInt32', int)
UInt16 = NewType('UInt16', int)

Blob = Optional[bytes]

log = logger(__name__)


class Unused:
    def __class_getitem__(cls, _):
        return type('Unused', (), {})


class TypeAttributes(FlagAccessMixin, enum.IntFlag):
    Public        = 0x00000001  # noqa
    Interface     = 0x00000020  # noqa
    Abstract      = 0x00000080  # noqa
    Sealed        = 0x00000100  # noqa
    SpecialName   = 0x00000400  # noqa
    Import        = 0x00001000  # noqa
    Serializable  = 0x00002000  # noqa
    BeforeFieldInit = 0x00100000  # noqa


class MethodAttributes(FlagAccessMixin, enum.IntFlag):
    Public        = 0x0006  # noqa
    Static        = 0x0010  # noqa
    Final         = 0x0020  # noqa
    Virtual       = 0x0040  # noqa
    HideBySig     = 0x0080  # noqa
    NewSlot       = 0x0100  # noqa
    Abstract      = 0x0400  # noqa
    SpecialName   = 0x0800  # noqa
    RTSpecialName = 0x1000  # noqa


class MethodSemanticsAttributes(FlagAccessMixin, enum.IntFlag):
    Setter   = 0x0001  # noqa
    Getter   = 0x0002  # noqa
    Other    = 0x0004  # noqa
    AddOn    = 0x0008  # noqa
    RemoveOn = 0x0010  # noqa
    Fire     = 0x0020  # noqa


class NetTable(enum.IntEnum):
    Module                 = 0x00  # noqa
    TypeRef                = 0x01  # noqa
    TypeDef                = 0x02  # noqa
    FieldPtr               = 0x03  # noqa
    Field                  = 0x04  # noqa
    MethodPtr              = 0x05  # noqa
    MethodDef              = 0x06  # noqa
    ParamPtr               = 0x07  # noqa
    Param                  = 0x08  # noqa
    InterfaceImpl          = 0x09  # noqa
    MemberRef              = 0x0A  # noqa
    Constant               = 0x0B  # noqa
    CustomAttribute        = 0x0C  # noqa
    FieldMarshal           = 0x0D  # noqa
    Permission             = 0x0E  # noqa
    ClassLayout            = 0x0F  # noqa
    FieldLayout            = 0x10  # noqa
    StandAloneSig          = 0x11  # noqa
    EventMap               = 0x12  # noqa
    EventPtr               = 0x13  # noqa
    Event                  = 0x14  # noqa
    PropertyMap            = 0x15  # noqa
    PropertyPtr            = 0x16  # noqa
    Property               = 0x17  # noqa
    MethodSemantics        = 0x18  # noqa
    MethodImpl             = 0x19  # noqa
    ModuleRef              = 0x1A  # noqa
    TypeSpec               = 0x1B  # noqa
    ImplMap                = 0x1C  # noqa
    FieldRVA               = 0x1D  # noqa
    ENCLog                 = 0x1E  # noqa
    ENCMap                 = 0x1F  # noqa
    Assembly               = 0x20  # noqa
    AssemblyProcessor      = 0x21  # noqa
    AssemblyOS             = 0x22  # noqa
    AssemblyRef            = 0x23  # noqa
    AssemblyRefProcessor   = 0x24  # noqa
    AssemblyRefOS          = 0x25  # noqa
    File                   = 0x26  # noqa
    ExportedType           = 0x27  # noqa
    ManifestResource       = 0x28  # noqa
    NestedClass            = 0x29  # noqa
    GenericParam           = 0x2A  # noqa
    MethodSpec             = 0x2B  # noqa
    GenericParamConstraint = 0x2C  # noqa
    Document               = 0x30  # noqa
    MethodDebugInformation = 0x31  # noqa
    LocalScope             = 0x32  # noqa
    LocalVariable          = 0x33  # noqa
    LocalConstant          = 0x34  # noqa
    ImportScope            = 0x35  # noqa
    StateMachineMethod     = 0x36  # noqa
    CustomDebugInformation = 0x37  # noqa
    Unused                 = 0xFF  # noqa

    def __repr__(self):
        return self.name


def make_token(table: NetTable, row: int) -> int:
    """
    A metadata token is the table number in the high byte and the 1-based row in the low 24 bits.
    """
    return table << 24 | row


class Index(Generic[R]):
    """
    A reference to a row in a metadata table. Row numbers are 1-based; row 0 is the nil reference.
    """
    __slots__ = 'Table', 'Index'

    def __init__(self, table: NetTable | None, row: int):
        self.Table = table
        self.Index = row

    def __bool__(self):
        return self.Table is not None and self.Index > 0

    def __eq__(self, other):
        if not isinstance(other, Index):
            return NotImplemented
        return self.Table == other.Table and self.Index == other.Index

    def __hash__(self):
        return hash((self.Table, self.Index))

    def __repr__(self):
        return F'{self.Table!r}[{self.Index}]'

    @property
    def token(self) -> int:
        if self.Table is None:
            return 0
        return make_token(self.Table, self.Index)

    def __json__(self):
        return {
            'Table': repr(self.Table),
            'Index': self.Index,
        }


class Module(NamedTuple):
    Generation: UInt16
    Name: str
    MvId: Optional[UUID]
    EncId: Optional[UUID]
    EncBaseId: Optional[UUID]


class TypeRef(NamedTuple):
    ResolutionScope: Index[ResolutionScope]
    TypeName: str
    TypeNamespace: str


class TypeDef(NamedTuple):
    Flags: UInt32
    TypeName: str
    TypeNamespace: str
    Extends: Index[TypeDefOrRef]
    FieldList: Index[Field]
    MethodList: Index[MethodDef]

    @property
    def Attributes(self):
        return TypeAttributes(self.Flags)


class FieldPtr(NamedTuple):
    Ref: Index[Field]


class Field(NamedTuple):
    Flags: UInt16
    Name: str
    Signature: Blob


class MethodPtr(NamedTuple):
    Ref: Index[MethodDef]


class MethodDef(NamedTuple):
    RVA: UInt32
    ImplFlags: UInt16
    Flags: UInt16
    Name: str
    Signature: Blob
    ParamList: Index[Param]

    @property
    def Attributes(self):
        return MethodAttributes(self.Flags)


class ParamPtr(NamedTuple):
    Ref: Index[Param]


class Param(NamedTuple):
    Flags: UInt16
    Sequence: UInt16
    Name: str


class InterfaceImpl(NamedTuple):
    Class: Index[TypeDef]
    Interface: Index[TypeDefOrRef]


class MemberRef(NamedTuple):
    Class: Index[MemberRefParent]
    Name: str
    Signature: Blob


class Constant(NamedTuple):
    Type: UInt16
    Parent: Index[HasConstant]
    Value: Blob


class CustomAttribute(NamedTuple):
    Parent: Index[HasCustomAttribute]
    Type: Index[CustomAttributeType]
    Value: Blob


class FieldMarshal(NamedTuple):
    Parent: Index[HasFieldMarshall]
    NativeType: Blob


class Permission(NamedTuple):
    Action: UInt16
    Parent: Index[HasDeclSecurity]
    PermissionSet: Blob


class ClassLayout(NamedTuple):
    PackingSize: UInt16
    ClassSize: UInt32
    Parent: Index[TypeDef]


class FieldLayout(NamedTuple):
    Offset: UInt32
    Field: Index[Field]


class StandAloneSig(NamedTuple):
    Signature: Blob


class EventMap(NamedTuple):
    Parent: Index[TypeDef]
    EventList: Index[Event]


class EventPtr(NamedTuple):
    Ref: Index[Event]


class Event(NamedTuple):
    EventFlags: UInt16
    Name: str
    EventType: Index[TypeDefOrRef]


class PropertyMap(NamedTuple):
    Parent: Index[TypeDef]
    PropertyList: Index[Property]


class PropertyPtr(NamedTuple):
    Ref: Index[Property]


class Property(NamedTuple):
    Flags: UInt16
    Name: str
    Type: Blob


class MethodSemantics(NamedTuple):
    Semantics: UInt16
    Method: Index[MethodDef]
    Association: Index[HasSemantics]


class MethodImpl(NamedTuple):
    Class: Index[TypeDef]
    MethodBody: Index[MethodDefOrRef]
    MethodDeclaration: Index[MethodDefOrRef]


class ModuleRef(NamedTuple):
    Name: str


class TypeSpec(NamedTuple):
    Signature: Blob


class ImplMap(NamedTuple):
    MappingFlags: UInt16
    MemberForwarded: Index[MemberForwarded]
    ImportName: str
    ImportScope: Index[ModuleRef]


class FieldRVA(NamedTuple):
    RVA: UInt32
    Field: Index[Field]


class ENCLog(NamedTuple):
    Token: UInt32
    FuncCode: UInt32


class ENCMap(NamedTuple):
    Token: UInt32


class Assembly(NamedTuple):
    HashAlgId: UInt32
    MajorVersion: UInt16
    MinorVersion: UInt16
    BuildNumber: UInt16
    RevisionNumber: UInt16
    Flags: UInt32
    PublicKey: Blob
    Name: str
    Culture: str

    @property
    def Version(self):
        return F'{self.MajorVersion}.{self.MinorVersion}.{self.BuildNumber}.{self.RevisionNumber}'


class AssemblyProcessor(NamedTuple):
    Processor: UInt32


class AssemblyOS(NamedTuple):
    OsPlatformId: UInt32
    OsMajorVersion: UInt32
    OsMinorVersion: UInt32


class AssemblyRef(NamedTuple):
    MajorVersion: UInt16
    MinorVersion: UInt16
    BuildNumber: UInt16
    RevisionNumber: UInt16
    Flags: UInt32
    PublicKeyOrToken: Blob
    Name: str
    Culture: str
    HashValue: Blob

    @property
    def Version(self):
        return F'{self.MajorVersion}.{self.MinorVersion}.{self.BuildNumber}.{self.RevisionNumber}'


class AssemblyRefProcessor(NamedTuple):
    Processor: UInt32
    AssemblyRef: Index[AssemblyRef]


class AssemblyRefOS(NamedTuple):
    OsPlatformId: UInt32
    OsMajorVersion: UInt32
    OsMinorVersion: UInt32
    AssemblyRef: Index[AssemblyRef]


class File(NamedTuple):
    Flags: UInt32
    Name: str
    HashValue: Blob


class ExportedType(NamedTuple):
    Flags: UInt32
    TypeDefId: UInt32
    TypeName: str
    TypeNamespace: str
    Implementation: Index[Implementation]


class ManifestResource(NamedTuple):
    Offset: UInt32
    Flags: UInt32
    Name: str
    Implementation: Index[Implementation]


class NestedClass(NamedTuple):
    NestedClass: Index[TypeDef]
    EnclosingClass: Index[TypeDef]


class GenericParam(NamedTuple):
    Number: UInt16
    Flags: UInt16
    Owner: Index[TypeOrMethodDef]
    Name: str


class MethodSpec(NamedTuple):
    Method: Index[MethodDefOrRef]
    Instantiation: Blob


class GenericParamConstraint(NamedTuple):
    Owner: Index[GenericParam]
    Constraint: Index[TypeDefOrRef]


class Document(NamedTuple):
    Name: Blob
    HashAlgorithm: Optional[UUID]
    Hash: Blob
    Language: Optional[UUID]


class MethodDebugInformation(NamedTuple):
    Document: Index[Document]
    SequencePoints: Blob


class LocalScope(NamedTuple):
    Method: Index[MethodDef]
    ImportScope: Index[ImportScope]
    VariableList: Index[LocalVariable]
    ConstantList: Index[LocalConstant]
    StartOffset: UInt32
    Length: UInt32


class LocalVariable(NamedTuple):
    Attributes: UInt16
    VariableIndex: UInt16
    Name: str


class LocalConstant(NamedTuple):
    Name: str
    Signature: Blob


class ImportScope(NamedTuple):
    Parent: Index[ImportScope]
    Imports: Blob


class StateMachineMethod(NamedTuple):
    MoveNextMethod: Index[MethodDef]
    KickoffMethod: Index[MethodDef]


class CustomDebugInformation(NamedTuple):
    Parent: Index[HasCustomDebugInformation]
    Kind: Optional[UUID]
    Value: Blob


TypeDefOrRef = Union[
    TypeDef,
    TypeRef,
    TypeSpec,
]
HasConstant = Union[
    Field,
    Param,
    Property,
]
HasCustomAttribute = Union[
    MethodDef,
    Field,
    TypeRef,
    TypeDef,
    Param,
    InterfaceImpl,
    MemberRef,
    Module,
    Permission,
    Property,
    Event,
    StandAloneSig,
    ModuleRef,
    TypeSpec,
    Assembly,
    AssemblyRef,
    File,
    ExportedType,
    ManifestResource,
    GenericParam,
    GenericParamConstraint,
    MethodSpec,
]
HasFieldMarshall = Union[
    Field,
    Param,
]
HasDeclSecurity = Union[
    TypeDef,
    MethodDef,
    Assembly,
]
MemberRefParent = Union[
    TypeDef,
    TypeRef,
    ModuleRef,
    MethodDef,
    TypeSpec,
]
HasSemantics = Union[
    Event,
    Property,
]
MethodDefOrRef = Union[
    MethodDef,
    MemberRef,
]
MemberForwarded = Union[
    Field,
    MethodDef,
]
Implementation = Union[
    File,
    AssemblyRef,
    ExportedType,
]
CustomAttributeType = Union[
    Unused[1],
    Unused[2],
    MethodDef,
    MemberRef,
    Unused[3],
]
ResolutionScope = Union[
    Module,
    ModuleRef,
    AssemblyRef,
    TypeRef,
]
TypeOrMethodDef = Union[
    TypeDef,
    MethodDef,
]
HasCustomDebugInformation = Union[
    MethodDef,
    Field,
    TypeRef,
    TypeDef,
    Param,
    InterfaceImpl,
    MemberRef,
    Module,
    Permission,
    Property,
    Event,
    StandAloneSig,
    ModuleRef,
    TypeSpec,
    Assembly,
    AssemblyRef,
    File,
    ExportedType,
    ManifestResource,
    GenericParam,
    GenericParamConstraint,
    MethodSpec,
    Document,
    LocalScope,
    LocalVariable,
    LocalConstant,
    ImportScope,
]


class BitMask:
    def __init__(self, bitmask: int):
        self._bitmask = bitmask

    def __contains__(self, pos):
        return self[pos] == 1

    def __len__(self):
        return self._bitmask.bit_length()

    def __getitem__(self, pos):
        return (self._bitmask >> pos) & 1

    def __iter__(self):
        for k in range(len(self)):
            if k in self:
                yield k

    def __repr__(self):
        return F'{self._bitmask:b}'

    def __json__(self):
        return repr(self)


def bits_required(n: int):
    return 0 if not n else (n - 1).bit_length()


class NetMetaFlags(FlagAccessMixin, enum.IntFlag):
    LargeStrA = 0b1
    LargeGUID = 0b10
    LargeBlob = 0b100
    Padding = 0b1000
    DeltaOnly = 0b100000
    ExtraData = 0b1000000
    HasDelete = 0b10000000


class NetMetaDataTablesHeader:
    def __init__(self, reader: DotNetStructReader):
        self._Reserved1 = reader.u32()
        self.MajorVersion = reader.u8()
        self.MinorVersion = reader.u8()
        self.Flags = NetMetaFlags(reader.u8())
        self._Reserved2 = reader.u8()
        self.ExistingRows = BitMask(reader.u64())
        self.SortedRows = BitMask(reader.u64())
        self.RowCount = {k: reader.u32() for k in self.ExistingRows}


class _IndexInfo(NamedTuple):
    rows: tuple[NetTable, ...]
    bits: int
    mask: int
    large: bool


class NetMetaDataTables:
    """
    The parsed table stream. Every table is available as a list attribute of the same name; the
    list is empty when the table is not present. External row counts are used for portable PDB
    files, whose index columns refer to the tables of the module that the PDB describes.
    """
    TypesByID: dict[int, type] = {t.value: globals()[t.name] for t in NetTable if t is not NetTable.Unused}

    def __init__(
        self,
        reader: DotNetStructReader,
        heaps: HeapAccessor,
        external_row_counts: dict[int, int] | None = None,
    ):
        self.Header = NetMetaDataTablesHeader(reader)
        if self.Header.Flags.ExtraData:
            self.ExtraData = reader.u32()

        self.heaps = heaps
        self.row_counts: dict[int, int] = dict(external_row_counts or {})
        self._index_info: dict[tuple[type, ...], _IndexInfo] = {}
        self.row_counts.update(self.Header.RowCount)

        for table in NetTable:
            if table is not NetTable.Unused:
                setattr(self, table.name, [])

        _index_strA = reader.u32 if self.Header.Flags.LargeStrA else reader.u16
        _index_guid = reader.u32 if self.Header.Flags.LargeGUID else reader.u16
        _index_blob = reader.u32 if self.Header.Flags.LargeBlob else reader.u16

        def _column_reader(hint):
            if get_origin(hint) is Index:
                hint, = get_args(hint)
                if not (options := get_args(hint)):
                    options = (hint,)
                info = self._read_index_info(*options)
                return functools.partial(self._read_index, reader, info)
            if hint is UInt32:
                return reader.u32
            if hint is UInt16:
                return reader.u16
            if hint is str:
                return lambda: heaps.string(_index_strA())
            if hint == Blob:
                return lambda: heaps.blob(_index_blob())
            if hint == Optional[UUID]:
                return lambda: heaps.guid(_index_guid())
            raise ParserException(F'Unsupported column type {hint!r}.')

        for r in sorted(self.Header.RowCount):
            count = self.Header.RowCount[r]
            try:
                Type = self.TypesByID[r]
            except KeyError:
                raise ParserException(F'Cannot parse unknown table index {r:#02x}; unable to continue parsing.')
            columns = [_column_reader(hint) for hint in get_type_hints(Type).values()]
            rows: list = getattr(self, Type.__name__)
            log.debug(F'reading {count} rows of table {Type.__name__}')
            for _ in range(count):
                rows.append(Type(*(column() for column in columns)))

    def _read_index_info(self, *options: type):
        try:
            return self._index_info[options]
        except KeyError:
            pass
        rows = tuple(NetTable[t.__name__] for t in options)
        row_max_len = max(self.row_counts.get(t, 0) for t in rows)
        bits_index = bits_required(len(rows))
        mask = (1 << bits_index) - 1
        large = row_max_len >= 1 << (16 - bits_index)
        info = self._index_info[options] = _IndexInfo(rows, bits_index, mask, large)
        return info

    @staticmethod
    def _read_index(reader: DotNetStructReader, info: _IndexInfo):
        raw = reader.u32() if info.large else reader.u16()
        row = raw >> info.bits
        tag = raw & info.mask
        try:
            table = info.rows[tag]
        except IndexError:
            table = None
        return Index(table, row)

    @overload
    def __getitem__(self, k: int | str) -> list[NamedTuple]:
        ...

    @overload
    def __getitem__(self, k: Index[R]) -> R:
        ...

    def __getitem__(self, k):
        if isinstance(k, Index):
            if (table := k.Table) is None or table is NetTable.Unused or k.Index <= 0:
                raise KeyError(k)
            try:
                return self[table.name][k.Index - 1]
            except IndexError as IE:
                raise KeyError(k) from IE
        if isinstance(k, int):
            k = self.TypesByID[k].__name__
        return getattr(self, k)

    def row(self, token: int):
        """
        Look up a row by its metadata token.
        """
        return self[Index(NetTable(token >> 24), token & 0xFFFFFF)]

    def _list_rows(self, owners: list, column: str, owner: int, table: NetTable, pointers: list) -> list[int]:
        count = len(pointers) if pointers else len(self[table.name])
        start = getattr(owners[owner - 1], column).Index
        if owner < len(owners):
            end = getattr(owners[owner], column).Index
        else:
            end = count + 1
        start = max(start, 1)
        end = min(end, count + 1)
        positions = range(start, end)
        if not pointers:
            return list(positions)
        return [pointers[k - 1].Ref.Index for k in positions]

    def methods_of(self, typedef: int) -> list[int]:
        """
        The 1-based MethodDef rows of the given TypeDef row.
        """
        return self._list_rows(self.TypeDef, 'MethodList', typedef, NetTable.MethodDef, self.MethodPtr)

    def params_of(self, method: int) -> list[int]:
        """
        The 1-based Param rows of the given MethodDef row.
        """
        return self._list_rows(self.MethodDef, 'ParamList', method, NetTable.Param, self.ParamPtr)

    @functools.cached_property
    def _property_maps(self) -> dict[int, int]:
        return {pm.Parent.Index: k for k, pm in enumerate(self.PropertyMap, 1)}

    def properties_of(self, typedef: int) -> list[int]:
        """
        The 1-based Property rows of the given TypeDef row.
        """
        try:
            owner = self._property_maps[typedef]
        except KeyError:
            return []
        return self._list_rows(self.PropertyMap, 'PropertyList', owner, NetTable.Property, self.PropertyPtr)

    @functools.cached_property
    def accessors(self) -> dict[int, tuple[int, int]]:
        """
        Maps each Property row to the MethodDef rows of its getter and setter; 0 means the accessor
        does not exist. The first getter and the first setter win.
        """
        accessors: dict[int, tuple[int, int]] = {}
        for ms in self.MethodSemantics:
            if ms.Association.Table is not NetTable.Property:
                continue
            semantics = MethodSemanticsAttributes(ms.Semantics)
            getter, setter = accessors.get(ms.Association.Index, (0, 0))
            if semantics.Getter and not getter:
                getter = ms.Method.Index
            if semantics.Setter and not setter:
                setter = ms.Method.Index
            accessors[ms.Association.Index] = getter, setter
        return accessors

    @functools.cached_property
    def _method_list_starts(self) -> list[int]:
        return [td.MethodList.Index for td in self.TypeDef]

    @functools.cached_property
    def _method_positions(self) -> dict[int, int]:
        return {ptr.Ref.Index: k for k, ptr in enumerate(self.MethodPtr, 1)}

    def declaring_type_of(self, method: int) -> int:
        """
        The 1-based TypeDef row that owns the given MethodDef row, or 0 if there is none.
        """
        position = self._method_positions.get(method, method) if self.MethodPtr else method
        starts = self._method_list_starts
        owner = bisect.bisect_right(starts, position)
        while owner > 0:
            if position in self._list_range(owner):
                return owner
            owner -= 1
        return 0

    def _list_range(self, typedef: int) -> range:
        count = len(self.MethodPtr or self.MethodDef)
        starts = self._method_list_starts
        end = starts[typedef] if typedef < len(starts) else count + 1
        return range(starts[typedef - 1], min(end, count + 1))
