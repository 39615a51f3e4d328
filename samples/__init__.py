"""
Synthetic test inputs. The classes in this module write minimal but well-formed .NET modules and
portable PDB files from a short description, so that the test suite does not depend on binaries
produced by a compiler.
"""
from __future__ import annotations

import dataclasses
import struct

from typing import Optional, get_args, get_origin, get_type_hints
from uuid import UUID

from dnlens.lib.dotnet import tables as schema
from dnlens.lib.dotnet.tables import Index, NetTable, bits_required

SAMPLE_MVID = UUID('6f1c3a52-8b0e-4c2d-9a77-0d3e5b21c4f8')
SAMPLE_PDB_GUID = UUID('0b9e4a6c-57d1-4f3b-8e02-c1a7d4f65e90')


def compress(value: int) -> bytes:
    if value < 0x80:
        return bytes((value,))
    if value < 0x4000:
        return (value | 0x8000).to_bytes(2, 'big')
    return (value | 0xC0000000).to_bytes(4, 'big')


def compress_signed(value: int) -> bytes:
    negative = int(value < 0)
    if -0x40 <= value < 0x40:
        return bytes((((value & 0x3F) << 1) | negative,))
    if -0x2000 <= value < 0x2000:
        return ((((value & 0x1FFF) << 1) | negative) | 0x8000).to_bytes(2, 'big')
    return ((((value & 0x0FFFFFFF) << 1) | negative) | 0xC0000000).to_bytes(4, 'big')


def align(value: int, boundary: int) -> int:
    return -(-value // boundary) * boundary


def pad(data: bytes | bytearray, boundary: int = 4) -> bytes:
    return bytes(data) + B'\0' * (align(len(data), boundary) - len(data))


class E:
    VOID   = B'\x01'  # noqa
    BOOL   = B'\x02'  # noqa
    CHAR   = B'\x03'  # noqa
    I4     = B'\x08'  # noqa
    I8     = B'\x0A'  # noqa
    R8     = B'\x0D'  # noqa
    STRING = B'\x0E'  # noqa
    OBJECT = B'\x1C'  # noqa
    NINT   = B'\x18'  # noqa


def szarray(element: bytes) -> bytes:
    return B'\x1D' + element


def array(element: bytes, rank: int) -> bytes:
    return B'\x14' + element + compress(rank) + B'\0\0'


def pointer(element: bytes) -> bytes:
    return B'\x0F' + element


def byref(element: bytes) -> bytes:
    return B'\x10' + element


def var(index: int, method: bool = False) -> bytes:
    return (B'\x1E' if method else B'\x13') + compress(index)


def typeref(row: int, valuetype: bool = False) -> bytes:
    return (B'\x11' if valuetype else B'\x12') + compress(row << 2 | 1)


def typedef(row: int, valuetype: bool = False) -> bytes:
    return (B'\x11' if valuetype else B'\x12') + compress(row << 2)


def typespec(row: int) -> bytes:
    return B'\x12' + compress(row << 2 | 2)


def generic(definition: bytes, *arguments: bytes) -> bytes:
    return B'\x15' + definition + compress(len(arguments)) + B''.join(arguments)


def method_sig(rtype: bytes, *params: bytes, instance: bool = True) -> bytes:
    return bytes((0x20 if instance else 0,)) + compress(len(params)) + rtype + B''.join(params)


def property_sig(ptype: bytes, instance: bool = True) -> bytes:
    return bytes((0x28 if instance else 0x08,)) + B'\0' + ptype


def attribute_value(value: str | None) -> bytes:
    if value is None:
        return B'\x01\x00\xFF\x00\x00'
    encoded = value.encode('utf8')
    return B'\x01\x00' + compress(len(encoded)) + encoded + B'\x00\x00'


class StringHeap:
    def __init__(self):
        self.data = bytearray(1)
        self.cache = {'': 0}

    def add(self, value: str) -> int:
        try:
            return self.cache[value]
        except KeyError:
            offset = self.cache[value] = len(self.data)
            self.data.extend(value.encode('utf8') + B'\0')
            return offset


class BlobHeap:
    def __init__(self):
        self.data = bytearray(1)

    def add(self, value: bytes | None) -> int:
        if value is None:
            return 0
        offset = len(self.data)
        self.data.extend(compress(len(value)) + value)
        return offset


class GuidHeap:
    def __init__(self):
        self.data = bytearray()

    def add(self, value: UUID | None) -> int:
        if value is None:
            return 0
        self.data.extend(value.bytes_le)
        return len(self.data) >> 4


def _index_info(hint, row_counts: dict[int, int]):
    hint, = get_args(hint)
    options = get_args(hint) or (hint,)
    tables = [NetTable[t.__name__] for t in options]
    bits = bits_required(len(tables))
    large = max(row_counts.get(t, 0) for t in tables) >= 1 << (16 - bits)
    return tables, bits, large


def write_table_stream(
    rows: dict[NetTable, list[tuple]],
    strings: StringHeap,
    blobs: BlobHeap,
    guids: GuidHeap,
    external_row_counts: dict[int, int] | None = None,
) -> bytes:
    """
    Serialize table rows into a `#~` stream. The column values of a row are given in the order of
    the row schema in `dnlens.lib.dotnet.tables`: integers for constant columns, strings, bytes and
    UUIDs for heap columns, and `Index` objects or plain row numbers for index columns.
    """
    present = {t: r for t, r in rows.items() if r}
    row_counts = dict(external_row_counts or {})
    row_counts.update({t: len(r) for t, r in present.items()})
    body = bytearray()
    for table in sorted(present):
        Type = getattr(schema, table.name)
        hints = list(get_type_hints(Type).values())
        for row in present[table]:
            if len(row) != len(hints):
                raise ValueError(F'row for {table.name} has {len(row)} columns, expected {len(hints)}')
            for hint, value in zip(hints, row):
                if get_origin(hint) is Index:
                    tables, bits, large = _index_info(hint, row_counts)
                    if isinstance(value, Index):
                        raw = value.Index << bits | (tables.index(value.Table) if value.Table in tables else 0)
                    else:
                        raw = value << bits
                    body.extend(struct.pack('<I' if large else '<H', raw))
                elif hint is schema.UInt32:
                    body.extend(struct.pack('<I', value))
                elif hint is schema.UInt16:
                    body.extend(struct.pack('<H', value))
                elif hint is str:
                    body.extend(struct.pack('<H', strings.add(value)))
                elif hint == schema.Blob:
                    body.extend(struct.pack('<H', blobs.add(value)))
                elif hint == Optional[UUID]:
                    body.extend(struct.pack('<H', guids.add(value)))
                else:
                    raise TypeError(hint)
    valid = sum(1 << t for t in present)
    header = struct.pack('<IBBBBQQ', 0, 2, 0, 0, 1, valid, 0)
    counts = B''.join(struct.pack('<I', len(present[t])) for t in sorted(present))
    return pad(header + counts + body)


def write_metadata(streams: list[tuple[str, bytes]], version: str = 'v4.0.30319') -> bytes:
    """
    Write a metadata root with the given streams. Stream offsets are relative to the root.
    """
    version_data = pad(version.encode('latin1') + B'\0')
    head = struct.pack('<IHHII', 0x424A5342, 1, 1, 0, len(version_data)) + version_data
    head += struct.pack('<HH', 0, len(streams))
    directory_size = sum(8 + len(pad(name.encode('latin1') + B'\0')) for name, _ in streams)
    offset = len(head) + directory_size
    directory = bytearray()
    payload = bytearray()
    for name, data in streams:
        data = pad(data)
        directory.extend(struct.pack('<II', offset + len(payload), len(data)))
        directory.extend(pad(name.encode('latin1') + B'\0'))
        payload.extend(data)
    return bytes(head + directory + payload)


@dataclasses.dataclass
class SampleMethod:
    name: str
    signature: bytes = method_sig(E.VOID)
    flags: int = 0x0086
    params: list[str] = dataclasses.field(default_factory=list)


@dataclasses.dataclass
class SampleProperty:
    name: str
    signature: bytes
    getter: Optional[str] = None
    setter: Optional[str] = None


@dataclasses.dataclass
class SampleType:
    name: str
    namespace: str = 'Acme'
    flags: int = 0x00100001
    methods: list[SampleMethod] = dataclasses.field(default_factory=list)
    properties: list[SampleProperty] = dataclasses.field(default_factory=list)


@dataclasses.dataclass
class CodeViewEntry:
    guid: UUID
    age: int = 1
    path: str = 'Sample.pdb'


class SampleAssembly:
    """
    Describes a .NET module with an assembly manifest. Type references must be registered via
    `type_ref` before signatures that refer to them are built; the returned row number is used in
    the `typeref` signature helper. Calling `build` produces the bytes of a PE32 image.
    If `method_pointers` is not empty, it is written as the MethodPtr table.
    """
    def __init__(
        self,
        name: str = 'Sample',
        version: tuple[int, int, int, int] = (1, 2, 3, 4),
        culture: str = '',
        public_key: bytes | None = None,
        machine: int = 0x014C,
        subsystem: int = 3,
        codeview: CodeViewEntry | None = None,
    ):
        self.name = name
        self.version = version
        self.culture = culture
        self.public_key = public_key
        self.machine = machine
        self.subsystem = subsystem
        self.codeview = codeview
        self.types: list[SampleType] = []
        self.references: list[tuple[str, tuple[int, int, int, int]]] = []
        self.attributes: list[tuple[str, bytes]] = []
        self._type_refs: list[tuple[str, str]] = []
        self.method_pointers: list[int] = []
        self.row_counts: dict[int, int] = {}

    def add_type(self, t: SampleType) -> int:
        """
        Add a type definition and return its TypeDef row; row 1 is the `<Module>` type.
        """
        self.types.append(t)
        return len(self.types) + 1

    def add_reference(self, name: str, version: tuple[int, int, int, int]):
        self.references.append((name, version))

    def add_attribute(self, type_name: str, value: str | None):
        self.attributes.append((type_name, attribute_value(value)))

    def add_raw_attribute(self, type_name: str, blob: bytes):
        self.attributes.append((type_name, blob))

    def type_ref(self, namespace: str, name: str) -> int:
        key = namespace, name
        try:
            return self._type_refs.index(key) + 1
        except ValueError:
            self._type_refs.append(key)
            return len(self._type_refs)

    def method_rows(self) -> dict[tuple[str, str], int]:
        """
        Maps pairs of type name and method name to the MethodDef row of the method.
        """
        rows = {}
        k = 1
        for t in self.types:
            for m in t.methods:
                rows[t.name, m.name] = k
                k += 1
        return rows

    def metadata(self) -> bytes:
        strings = StringHeap()
        blobs = BlobHeap()
        guids = GuidHeap()

        attribute_refs = [self.type_ref('System.Reflection', name) for name, _ in self.attributes]
        scope = Index(NetTable.AssemblyRef, 1) if self.references else Index(NetTable.Module, 1)

        rows: dict[NetTable, list[tuple]] = {t: [] for t in NetTable if t is not NetTable.Unused}
        rows[NetTable.Module].append((0, F'{self.name}.dll', SAMPLE_MVID, None, None))
        for namespace, name in self._type_refs:
            rows[NetTable.TypeRef].append((scope, name, namespace))

        rows[NetTable.TypeDef].append((0, '<Module>', '', Index(NetTable.TypeDef, 0), 1, 1))
        method_rows = self.method_rows()
        method = param = prop = 1
        for k, t in enumerate(self.types, 2):
            rows[NetTable.TypeDef].append((
                t.flags, t.name, t.namespace, Index(NetTable.TypeDef, 0), 1, method))
            for m in t.methods:
                rows[NetTable.MethodDef].append((0, 0, m.flags, m.name, m.signature, param))
                for sequence, pname in enumerate(m.params, 1):
                    rows[NetTable.Param].append((0, sequence, pname))
                    param += 1
                method += 1
            if t.properties:
                rows[NetTable.PropertyMap].append((k, prop))
            for p in t.properties:
                rows[NetTable.Property].append((0, p.name, p.signature))
                association = Index(NetTable.Property, prop)
                if p.setter:
                    rows[NetTable.MethodSemantics].append((0x0001, method_rows[t.name, p.setter], association))
                if p.getter:
                    rows[NetTable.MethodSemantics].append((0x0002, method_rows[t.name, p.getter], association))
                prop += 1

        for (name, blob), ref in zip(self.attributes, attribute_refs):
            rows[NetTable.MemberRef].append((Index(NetTable.TypeRef, ref), '.ctor', method_sig(E.VOID, E.STRING)))
            ctor = Index(NetTable.MemberRef, len(rows[NetTable.MemberRef]))
            rows[NetTable.CustomAttribute].append((Index(NetTable.Assembly, 1), ctor, blob))

        rows[NetTable.Assembly].append((
            0x8004, *self.version, 1 if self.public_key else 0, self.public_key, self.name, self.culture))
        for name, version in self.references:
            rows[NetTable.AssemblyRef].append((*version, 0, None, name, '', None))
        for ref in self.method_pointers:
            rows[NetTable.MethodPtr].append((ref,))

        self.row_counts = {t: len(r) for t, r in rows.items() if r}
        tables = write_table_stream(rows, strings, blobs, guids)
        return write_metadata([
            ('#~', tables),
            ('#Strings', bytes(strings.data)),
            ('#US', B'\0'),
            ('#GUID', bytes(guids.data)),
            ('#Blob', bytes(blobs.data)),
        ])

    def build(self) -> bytes:
        return write_image(self.metadata(), self.machine, self.subsystem, self.codeview)


def write_image(metadata: bytes, machine: int = 0x014C, subsystem: int = 3, codeview: CodeViewEntry | None = None) -> bytes:
    """
    Wrap metadata into a PE32 image with a single section that contains the CLR runtime header,
    the metadata and optionally a debug directory with a CodeView entry.
    """
    file_alignment = 0x200
    section_alignment = 0x2000
    section_rva = 0x2000
    section_offset = 0x200

    section = bytearray(72)
    metadata_rva = section_rva + len(section)
    section.extend(pad(metadata))
    struct.pack_into('<IHHIIII', section, 0, 72, 2, 5, metadata_rva, len(metadata), 1, 0)

    debug_rva = debug_size = 0
    if codeview is not None:
        debug_rva = section_rva + len(section)
        debug_size = 28
        rsds = B'RSDS' + codeview.guid.bytes_le + struct.pack('<I', codeview.age) + codeview.path.encode('utf8') + B'\0'
        rsds_rva = debug_rva + debug_size
        rsds_offset = section_offset + rsds_rva - section_rva
        section.extend(struct.pack('<IIHHIIII', 0, 0, 0, 0, 2, len(rsds), rsds_rva, rsds_offset))
        section.extend(pad(rsds))

    virtual_size = len(section)
    raw_size = align(virtual_size, file_alignment)
    section.extend(B'\0' * (raw_size - virtual_size))

    directories = [(0, 0)] * 16
    directories[6] = (debug_rva, debug_size)
    directories[14] = (section_rva, 72)

    dos = bytearray(0x80)
    dos[:2] = B'MZ'
    struct.pack_into('<I', dos, 0x3C, 0x80)

    coff = struct.pack('<HHIIIHH', machine, 1, 0, 0, 0, 0xE0, 0x2102)
    optional = struct.pack(
        '<HBBIIIIIIIIIHHHHHHIIIIHHIIIIII',
        0x10B, 11, 0,
        raw_size, 0, 0,
        0, section_rva, 0,
        0x400000, section_alignment, file_alignment,
        4, 0, 0, 0, 4, 0, 0,
        align(section_rva + virtual_size, section_alignment),
        section_offset, 0,
        subsystem, 0x8540,
        0x100000, 0x1000, 0x100000, 0x1000,
        0, 16,
    ) + B''.join(struct.pack('<II', *d) for d in directories)
    header = struct.pack(
        '<8sIIIIIIHHI', B'.text', virtual_size, section_rva, raw_size, section_offset, 0, 0, 0, 0, 0x60000020)

    image = bytearray(dos + B'PE\0\0' + coff + optional + header)
    image.extend(B'\0' * (section_offset - len(image)))
    image.extend(section)
    return bytes(image)


@dataclasses.dataclass
class SamplePoint:
    offset: int
    line: int
    column: int = 9
    end_line: Optional[int] = None
    end_column: Optional[int] = None
    hidden: bool = False
    document: Optional[int] = None


HIDDEN = SamplePoint(0, 0, hidden=True)


def sequence_points(points: list[SamplePoint], document: int | None = None) -> bytes:
    """
    Encode a sequence points blob. If `document` is given, it is written as the initial document
    of the blob; this is required when the document column of the row is nil.
    """
    blob = bytearray(compress(0))
    if document is not None:
        blob.extend(compress(document))
    previous_offset = 0
    previous = None
    for k, point in enumerate(points):
        if k and point.document is not None:
            blob.extend(B'\0' + compress(point.document))
        blob.extend(compress(point.offset - previous_offset))
        previous_offset = point.offset
        if point.hidden:
            blob.extend(B'\0\0')
            continue
        end_line = point.line if point.end_line is None else point.end_line
        end_column = point.column + 1 if point.end_column is None else point.end_column
        delta_lines = end_line - point.line
        delta_columns = end_column - point.column
        blob.extend(compress(delta_lines))
        blob.extend(compress(delta_columns) if delta_lines == 0 else compress_signed(delta_columns))
        if previous is None:
            blob.extend(compress(point.line) + compress(point.column))
        else:
            blob.extend(compress_signed(point.line - previous.line) + compress_signed(point.column - previous.column))
        previous = point
    return bytes(blob)


class SamplePdb:
    """
    Describes a portable PDB. The `methods` dictionary maps MethodDef rows to a pair of a 1-based
    document row and the sequence points blob; rows that are missing have no debug information.
    """
    def __init__(
        self,
        documents: list[str],
        methods: dict[int, tuple[int, bytes]],
        method_count: int,
        guid: UUID = SAMPLE_PDB_GUID,
        stamp: int = 0x5F3A11C2,
        row_counts: dict[int, int] | None = None,
    ):
        self.documents = documents
        self.methods = methods
        self.method_count = method_count
        self.guid = guid
        self.stamp = stamp
        self.row_counts = dict(row_counts or {NetTable.MethodDef: method_count})

    def build(self) -> bytes:
        strings = StringHeap()
        blobs = BlobHeap()
        guids = GuidHeap()
        rows: dict[NetTable, list[tuple]] = {NetTable.Document: [], NetTable.MethodDebugInformation: []}
        for name in self.documents:
            parts = name.split('/')
            blob = B'/' + B''.join(compress(blobs.add(p.encode('utf8')) if p else 0) for p in parts)
            rows[NetTable.Document].append((blob, None, None, None))
        for k in range(1, self.method_count + 1):
            document, points = self.methods.get(k, (0, None))
            rows[NetTable.MethodDebugInformation].append((document, points))
        referenced = sorted(self.row_counts)
        pdb = bytearray(self.guid.bytes_le + struct.pack('<I', self.stamp))
        pdb.extend(struct.pack('<IQ', 0, sum(1 << t for t in referenced)))
        pdb.extend(B''.join(struct.pack('<I', self.row_counts[t]) for t in referenced))
        tables = write_table_stream(rows, strings, blobs, guids, self.row_counts)
        return write_metadata([
            ('#Pdb', bytes(pdb)),
            ('#~', tables),
            ('#Strings', bytes(strings.data)),
            ('#US', B'\0'),
            ('#GUID', bytes(guids.data)),
            ('#Blob', bytes(blobs.data)),
        ], version='PDB v1.0')


def widget_assembly(codeview: CodeViewEntry | None = None) -> SampleAssembly:
    """
    The assembly `Sample` in version 1.2.3.4 with the type `Acme.Widget`. The method `Run` of this
    type has the MethodDef row 1.
    """
    assembly = SampleAssembly(codeview=codeview)
    assembly.add_reference('System.Runtime', (8, 0, 0, 0))
    task = assembly.type_ref('System.Threading.Tasks', 'Task`1')
    value_task = assembly.type_ref('System.Threading.Tasks', 'ValueTask')
    assembly.add_type(SampleType('Widget', methods=[
        SampleMethod('Run'),
        SampleMethod('Compute', method_sig(E.I4, E.I4, E.STRING), params=['count', 'label']),
        SampleMethod('RunAsync', method_sig(generic(typeref(task), E.I4))),
        SampleMethod('Wait', method_sig(typeref(value_task, valuetype=True))),
        SampleMethod('.ctor', flags=0x1886),
        SampleMethod('get_Size', method_sig(E.I4), flags=0x0886),
        SampleMethod('set_Title', method_sig(E.VOID, E.STRING), flags=0x0886, params=['value']),
    ], properties=[
        SampleProperty('Size', property_sig(E.I4), getter='get_Size'),
        SampleProperty('Title', property_sig(E.STRING), setter='set_Title'),
    ]))
    assembly.add_type(SampleType('<PrivateImplementationDetails>', namespace='', flags=0x100))
    return assembly
