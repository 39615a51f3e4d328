"""
Reading of portable PDB files and the correlation of their method debug information with the
methods of an analyzed assembly. A portable PDB uses the same metadata root as a .NET module; it
has a `#Pdb` stream and the debug tables `Document` and `MethodDebugInformation`. The rows of the
latter are parallel to the MethodDef table of the module, so row k describes the method with the
token `0x06000000 | k`.

References:
  [1]: https://github.com/dotnet/runtime/blob/main/docs/design/specs/PortablePdb-Metadata.md
"""
from __future__ import annotations

import codecs

from typing import Iterable, NamedTuple
from uuid import UUID

from dnlens.lib.dotnet.errors import CorrelationError, DecodeError, ParserException
from dnlens.lib.dotnet.heaps import DotNetStructReader
from dnlens.lib.dotnet.metadata import NetMetaData, PdbStream
from dnlens.lib.dotnet.model import AssemblyModel, CorrelationResult
from dnlens.lib.dotnet.tables import NetMetaDataTables, NetTable, make_token
from dnlens.lib.environment import environment, logger
from dnlens.lib.types import buf

log = logger(__name__)

HIDDEN_LINE = 0xFEEFEE


class SequencePoint(NamedTuple):
    Offset: int
    Document: int
    StartLine: int
    StartColumn: int
    EndLine: int
    EndColumn: int

    @property
    def Hidden(self) -> bool:
        return self.StartLine == HIDDEN_LINE


class SourceLocation(NamedTuple):
    Document: str
    Line: int


def decode_sequence_points(blob: bytes | None, document: int = 0) -> Iterable[SequencePoint]:
    """
    Decode the sequence points blob of a MethodDebugInformation row. The `document` argument is
    the document column of the row; when it is nil, the blob itself names the initial document.
    Hidden sequence points are generated with a start line of `0xFEEFEE`.
    """
    if not blob:
        return
    reader = DotNetStructReader(blob)
    reader.read_dn_unsigned_integer()
    if not document:
        document = reader.read_dn_unsigned_integer()
    offset = 0
    line = column = None
    first = True
    while not reader.eof:
        delta = reader.read_dn_unsigned_integer()
        if delta == 0 and not first:
            document = reader.read_dn_unsigned_integer()
            continue
        offset += delta
        first = False
        delta_lines = reader.read_dn_unsigned_integer()
        if delta_lines == 0:
            delta_columns = reader.read_dn_unsigned_integer()
        else:
            delta_columns = reader.read_dn_signed_integer()
        if delta_lines == 0 and delta_columns == 0:
            yield SequencePoint(offset, document, HIDDEN_LINE, 0, HIDDEN_LINE, 0)
            continue
        if line is None:
            line = reader.read_dn_unsigned_integer()
            column = reader.read_dn_unsigned_integer()
        else:
            line += reader.read_dn_signed_integer()
            column += reader.read_dn_signed_integer()
        yield SequencePoint(offset, document, line, column, line + delta_lines, column + delta_columns)


class PortablePdb:
    """
    A parsed portable PDB file. Raises `dnlens.lib.dotnet.errors.CorrelationError` if the input
    does not have the structure of a portable PDB.
    """
    def __init__(self, data: buf):
        try:
            meta = NetMetaData(DotNetStructReader(memoryview(data)))
        except (EOFError, ParserException) as E:
            raise CorrelationError(F'invalid metadata: {E!s}') from E
        if meta.Streams.Pdb is None:
            raise CorrelationError('the #Pdb stream is missing')
        if meta.Tables is None:
            raise CorrelationError('the table stream is missing')
        self.meta = meta
        self._document_names: dict[int, str] = {}

    @property
    def header(self) -> PdbStream:
        return self.meta.Streams.Pdb

    @property
    def tables(self) -> NetMetaDataTables:
        return self.meta.Tables

    @property
    def guid(self) -> UUID:
        return self.header.Guid

    def document_name(self, row: int) -> str:
        """
        Document names are stored as a blob that consists of a separator character followed by
        blob heap indices of the UTF-8 encoded name parts. Part index 0 denotes an empty part.
        """
        try:
            return self._document_names[row]
        except KeyError:
            pass
        name = self._document_names[row] = self._decode_document_name(row)
        return name

    def _decode_document_name(self, row: int) -> str:
        if not 0 < row <= len(self.tables.Document):
            raise CorrelationError(F'document {row} does not exist')
        document = self.tables.Document[row - 1]
        if document.Name is None:
            raise CorrelationError(F'the name of document {row} cannot be read')
        reader = DotNetStructReader(document.Name)
        heaps = self.meta.heaps
        try:
            separator = reader.read_bytes(1)
            parts = []
            while not reader.eof:
                index = reader.read_dn_unsigned_integer()
                part = heaps.blob(index) if index else B''
                if part is None:
                    raise DecodeError(F'invalid blob index {index:#x}')
                parts.append(codecs.decode(part, 'utf8'))
        except (EOFError, DecodeError, UnicodeDecodeError) as E:
            raise CorrelationError(F'the name of document {row} cannot be decoded: {E!s}') from E
        if separator == B'\0':
            return ''.join(parts)
        return codecs.decode(separator, 'latin1').join(parts)

    def method_locations(self) -> dict[int, SourceLocation]:
        """
        Maps method tokens to the document and the start line of the first visible sequence point.
        Methods without a document are omitted; a line of 0 means that the method has no visible
        sequence point.
        """
        locations = {}
        for k, info in enumerate(self.tables.MethodDebugInformation, 1):
            if not info.Document:
                continue
            name = self.document_name(info.Document.Index)
            line = 0
            try:
                for point in decode_sequence_points(info.SequencePoints, info.Document.Index):
                    if not point.Hidden:
                        line = point.StartLine
                        break
            except (EOFError, DecodeError) as E:
                raise CorrelationError(F'the sequence points of method {k} cannot be decoded: {E!s}') from E
            locations[make_token(NetTable.MethodDef, k)] = SourceLocation(name, line)
        return locations


class DebugCorrelator:
    """
    Attaches source locations from a portable PDB to the methods and types of a model. All
    information is extracted from the PDB before the model is modified; if anything fails, the
    model remains unchanged.
    """
    def __init__(self, model: AssemblyModel):
        self.model = model

    def correlate(self, data: buf, verify: bool | None = None) -> CorrelationResult:
        if verify is None:
            verify = not environment.pdb_skip_verify.value
        try:
            pdb = PortablePdb(data)
            locations = pdb.method_locations()
            if verify:
                self._verify(pdb)
        except Exception as E:
            log.info(F'correlation failed: {E!s}')
            return CorrelationResult(False, (
                F'Error loading PDB: {E!s}. Make sure it\'s a portable PDB file that matches the assembly.'))
        self._apply(pdb.guid, locations)
        return CorrelationResult(True)

    def _verify(self, pdb: PortablePdb):
        expected = self.model.identity.codeview_guid
        if expected is None:
            log.debug('the module has no CodeView entry; the PDB cannot be verified')
            return
        if UUID(expected) != pdb.guid:
            raise CorrelationError(F'the PDB id {pdb.guid} does not match the module debug id {expected}')

    def _apply(self, guid: UUID, locations: dict[int, SourceLocation]):
        identity = self.model.identity
        identity.debug_guid = str(guid)
        identity.source_files_count = len({location.Document for location in locations.values()})
        for t, m in self.model.methods():
            try:
                location = locations[m.token]
            except KeyError:
                continue
            m.source_file = location.Document
            m.line_number = location.Line
            if not t.source_file:
                t.source_file = location.Document
        log.debug(F'attached {len(locations)} source locations')
