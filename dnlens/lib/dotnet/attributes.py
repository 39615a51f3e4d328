"""
Decoding of the custom attributes that are attached to the assembly definition. Only attributes
with a single string argument are of interest; their values describe the assembly.
"""
from __future__ import annotations

import codecs

from typing import Callable, Iterable, NamedTuple

from dnlens.lib.dotnet.errors import DecodeError, ParserException
from dnlens.lib.dotnet.heaps import DotNetStructReader
from dnlens.lib.dotnet.tables import CustomAttribute, NetMetaDataTables, NetTable
from dnlens.lib.environment import logger

log = logger(__name__)

PROLOG = B'\x01\x00'
NULL_STRING = 0xFF


class AssemblyAttribute(NamedTuple):
    TypeName: str
    Value: str | None


def read_fixed_string_argument(blob: bytes | None) -> str | None:
    """
    Decode the first fixed argument of a custom attribute value blob as a string. The blob starts
    with the prolog `01 00`, followed by the length-prefixed UTF-8 string. A length byte of `FF`
    denotes the null string. The function returns `None` for the null string and for any blob that
    does not have this layout.
    """
    if blob is None or len(blob) < 4:
        return None
    reader = DotNetStructReader(blob)
    if reader.read_bytes(2) != PROLOG:
        return None
    if reader.u8(peek=True) == NULL_STRING:
        return None
    try:
        size = reader.read_dn_length_prefix()
        data = reader.read_exactly(size)
    except (EOFError, DecodeError):
        return None
    try:
        return codecs.decode(data, 'utf8')
    except UnicodeDecodeError:
        return None


class AttributeDecoder:
    """
    Resolves the type names of custom attributes and decodes their string argument.
    """
    def __init__(self, tables: NetMetaDataTables):
        self.tables = tables

    def type_name(self, attribute: CustomAttribute) -> str | None:
        """
        The name of the type that declares the attribute constructor. A constructor in another
        module is a MemberRef whose parent is the attribute type; a constructor in this module is
        a MethodDef whose declaring type is the attribute type.
        """
        tables = self.tables
        ctor = attribute.Type
        if ctor.Table is NetTable.MemberRef:
            parent = tables[ctor].Class
            if parent.Table is NetTable.TypeRef:
                return tables[parent].TypeName
            if parent.Table is NetTable.TypeDef:
                return tables[parent].TypeName
            return None
        if ctor.Table is NetTable.MethodDef:
            if owner := tables.declaring_type_of(ctor.Index):
                return tables.TypeDef[owner - 1].TypeName
        return None

    def assembly_attributes(self) -> Iterable[AssemblyAttribute]:
        """
        Generate the decoded custom attributes of the assembly definition. An attribute that cannot
        be resolved is logged and skipped.
        """
        for k, attribute in enumerate(self.tables.CustomAttribute, 1):
            if attribute.Parent.Table is not NetTable.Assembly:
                continue
            try:
                name = self.type_name(attribute)
            except (KeyError, IndexError, ParserException) as E:
                log.debug(F'unable to resolve the type of custom attribute {k}: {E!r}')
                continue
            if name is None:
                continue
            yield AssemblyAttribute(name, read_fixed_string_argument(attribute.Value))


def _assign(field: str) -> Callable:
    def assign(identity, value):
        setattr(identity, field, value)
    return assign


def _configuration(identity, value: str | None):
    identity.configuration = value
    if value is not None and value.lower() == 'debug':
        identity.is_debug = True


def _debuggable(identity, value):
    identity.is_debug = True


ATTRIBUTE_HANDLERS: dict[str, Callable] = {
    'TargetFrameworkAttribute'              : _assign('target_framework'),       # noqa
    'AssemblyCompanyAttribute'              : _assign('company'),                # noqa
    'AssemblyProductAttribute'              : _assign('product'),                # noqa
    'AssemblyDescriptionAttribute'          : _assign('description'),            # noqa
    'AssemblyCopyrightAttribute'            : _assign('copyright'),              # noqa
    'AssemblyFileVersionAttribute'          : _assign('file_version'),           # noqa
    'AssemblyInformationalVersionAttribute' : _assign('informational_version'),  # noqa
    'AssemblyConfigurationAttribute'        : _configuration,                    # noqa
    'DebuggableAttribute'                   : _debuggable,                       # noqa
}
"""
Maps the names of recognized assembly attributes to a function that stores the attribute value
in an `dnlens.lib.dotnet.model.AssemblyIdentity`.
"""


def apply_assembly_attributes(identity, attributes: Iterable[AssemblyAttribute]):
    for attribute in attributes:
        try:
            handler = ATTRIBUTE_HANDLERS[attribute.TypeName]
        except KeyError:
            continue
        handler(identity, attribute.Value)
