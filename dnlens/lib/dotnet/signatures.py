"""
Decoding of method, property, field and type specification signatures into type expressions, and
rendering of type expressions in C# notation. The signature grammar is described in ECMA-335,
partition II, section 23.2.

Decoding and rendering are separate steps: A `dnlens.lib.dotnet.signatures.SignatureDecoder`
produces a tree of the expression classes defined here, and `dnlens.lib.dotnet.signatures.render`
turns such a tree into a display string.
"""
from __future__ import annotations

import dataclasses
import enum
import re

from typing import NamedTuple, Optional, Union

from dnlens.lib.dotnet.errors import DecodeError
from dnlens.lib.dotnet.heaps import DotNetStructReader
from dnlens.lib.dotnet.tables import NetMetaDataTables
from dnlens.lib.environment import logger

log = logger(__name__)

MAX_NESTING = 64
"""
Type expressions nested deeper than this are rejected; type specifications can refer to each other
and a malicious file could otherwise make the decoder recurse indefinitely.
"""


class ElementType(enum.IntEnum):
    END         = 0x00  # noqa
    VOID        = 0x01  # noqa
    BOOLEAN     = 0x02  # noqa
    CHAR        = 0x03  # noqa
    I1          = 0x04  # noqa
    U1          = 0x05  # noqa
    I2          = 0x06  # noqa
    U2          = 0x07  # noqa
    I4          = 0x08  # noqa
    U4          = 0x09  # noqa
    I8          = 0x0A  # noqa
    U8          = 0x0B  # noqa
    R4          = 0x0C  # noqa
    R8          = 0x0D  # noqa
    STRING      = 0x0E  # noqa
    PTR         = 0x0F  # noqa
    BYREF       = 0x10  # noqa
    VALUETYPE   = 0x11  # noqa
    CLASS       = 0x12  # noqa
    VAR         = 0x13  # noqa
    ARRAY       = 0x14  # noqa
    GENERICINST = 0x15  # noqa
    TYPEDBYREF  = 0x16  # noqa
    I           = 0x18  # noqa
    U           = 0x19  # noqa
    FNPTR       = 0x1B  # noqa
    OBJECT      = 0x1C  # noqa
    SZARRAY     = 0x1D  # noqa
    MVAR        = 0x1E  # noqa
    CMOD_REQD   = 0x1F  # noqa
    CMOD_OPT    = 0x20  # noqa
    INTERNAL    = 0x21  # noqa
    MODIFIER    = 0x40  # noqa
    SENTINEL    = 0x41  # noqa
    PINNED      = 0x45  # noqa


class CallingConvention(enum.IntFlag):
    DEFAULT      = 0x00  # noqa
    VARARG       = 0x05  # noqa
    FIELD        = 0x06  # noqa
    LOCAL_SIG    = 0x07  # noqa
    PROPERTY     = 0x08  # noqa
    GENERICINST  = 0x0A  # noqa
    GENERIC      = 0x10  # noqa
    HASTHIS      = 0x20  # noqa
    EXPLICITTHIS = 0x40  # noqa


PRIMITIVE_NAMES = {
    ElementType.VOID       : 'void',            # noqa
    ElementType.BOOLEAN    : 'bool',            # noqa
    ElementType.CHAR       : 'char',            # noqa
    ElementType.I1         : 'sbyte',           # noqa
    ElementType.U1         : 'byte',            # noqa
    ElementType.I2         : 'short',           # noqa
    ElementType.U2         : 'ushort',          # noqa
    ElementType.I4         : 'int',             # noqa
    ElementType.U4         : 'uint',            # noqa
    ElementType.I8         : 'long',            # noqa
    ElementType.U8         : 'ulong',           # noqa
    ElementType.R4         : 'float',           # noqa
    ElementType.R8         : 'double',          # noqa
    ElementType.STRING     : 'string',          # noqa
    ElementType.OBJECT     : 'object',          # noqa
    ElementType.I          : 'nint',            # noqa
    ElementType.U          : 'nuint',           # noqa
    ElementType.TYPEDBYREF : 'TypedReference',  # noqa
}

NULLABLE_PLACEHOLDER = '?'


@dataclasses.dataclass(frozen=True)
class Primitive:
    code: ElementType


@dataclasses.dataclass(frozen=True)
class Named:
    name: str
    namespace: str = ''
    reference: bool = False
    """
    Whether the type was resolved through a TypeRef row, i.e. it is defined in another module.
    """


@dataclasses.dataclass(frozen=True)
class Array:
    element: TypeExpression
    rank: int = 1
    sizes: tuple[int, ...] = ()
    lower_bounds: tuple[int, ...] = ()


@dataclasses.dataclass(frozen=True)
class Pointer:
    element: TypeExpression


@dataclasses.dataclass(frozen=True)
class ByReference:
    element: TypeExpression


@dataclasses.dataclass(frozen=True)
class GenericInstance:
    generic: TypeExpression
    arguments: tuple[TypeExpression, ...]


@dataclasses.dataclass(frozen=True)
class GenericParameter:
    index: int
    method: bool = False


@dataclasses.dataclass(frozen=True)
class FunctionPointer:
    signature: Optional[MethodSignature] = None


@dataclasses.dataclass(frozen=True)
class Modified:
    unmodified: TypeExpression
    modifier: TypeExpression
    required: bool = False


@dataclasses.dataclass(frozen=True)
class Pinned:
    element: TypeExpression


TypeExpression = Union[
    Primitive,
    Named,
    Array,
    Pointer,
    ByReference,
    GenericInstance,
    GenericParameter,
    FunctionPointer,
    Modified,
    Pinned,
]


class MethodSignature(NamedTuple):
    header: CallingConvention
    generic_parameter_count: int
    return_type: TypeExpression
    parameter_types: tuple[TypeExpression, ...]
    required_parameter_count: int


_GENERIC_ARITY = re.compile(r'`\d+.*$')


def simple_name(name: str) -> str:
    """
    Remove the generic arity suffix from a type name, i.e. turn ``List`1`` into ``List``.
    """
    return _GENERIC_ARITY.sub('', name)


def render(expression: TypeExpression) -> str:
    """
    Render a type expression in C# notation. Custom modifiers and pinned markers are omitted,
    generic parameters are rendered as `T` followed by their index, and `Nullable<T>` from another
    module is rendered as `T?`.
    """
    if isinstance(expression, Primitive):
        try:
            return PRIMITIVE_NAMES[expression.code]
        except KeyError:
            return expression.code.name
    if isinstance(expression, Named):
        if expression.reference and expression.name == 'Nullable`1':
            return NULLABLE_PLACEHOLDER
        return simple_name(expression.name)
    if isinstance(expression, Array):
        commas = ',' * (expression.rank - 1)
        return F'{render(expression.element)}[{commas}]'
    if isinstance(expression, ByReference):
        return F'ref {render(expression.element)}'
    if isinstance(expression, Pointer):
        return F'{render(expression.element)}*'
    if isinstance(expression, FunctionPointer):
        return 'delegate*'
    if isinstance(expression, GenericInstance):
        generic = render(expression.generic)
        arguments = [render(a) for a in expression.arguments]
        if generic == NULLABLE_PLACEHOLDER and len(arguments) == 1:
            return F'{arguments[0]}?'
        return F'{generic}<{", ".join(arguments)}>'
    if isinstance(expression, GenericParameter):
        return F'T{expression.index}'
    if isinstance(expression, Modified):
        return render(expression.unmodified)
    if isinstance(expression, Pinned):
        return render(expression.element)
    raise TypeError(F'Not a type expression: {expression!r}')


class SignatureDecoder:
    """
    A recursive descent parser for signature blobs. Names of types that are referenced by a
    signature are resolved through the metadata tables. The `decode_*` methods raise a
    `dnlens.lib.dotnet.errors.DecodeError` on malformed input; the remaining public methods
    return `None` instead.
    """
    def __init__(self, tables: NetMetaDataTables):
        self.tables = tables

    def method_signature(self, blob: bytes | None) -> MethodSignature | None:
        return self._attempt(self.decode_method, blob)

    def property_signature(self, blob: bytes | None) -> MethodSignature | None:
        return self._attempt(self.decode_property, blob)

    def field_signature(self, blob: bytes | None) -> TypeExpression | None:
        return self._attempt(self.decode_field, blob)

    def _attempt(self, decoder, blob):
        try:
            return decoder(blob)
        except (DecodeError, EOFError) as E:
            log.debug(F'failed to decode signature: {E!s}')
            return None

    def decode_method(self, blob: bytes | None) -> MethodSignature:
        reader = self._reader(blob)
        signature = self._read_method(reader, 0)
        if signature.header & 0x0F in (
            CallingConvention.FIELD,
            CallingConvention.LOCAL_SIG,
            CallingConvention.PROPERTY,
            CallingConvention.GENERICINST,
        ):
            raise DecodeError(F'Calling convention {signature.header:#04x} does not belong to a method.')
        return signature

    def decode_property(self, blob: bytes | None) -> MethodSignature:
        reader = self._reader(blob)
        header = CallingConvention(reader.u8())
        if header & 0x0F != CallingConvention.PROPERTY:
            raise DecodeError(F'Invalid property signature header {header:#04x}.')
        count = reader.read_dn_unsigned_integer()
        rtype = self._read_type(reader, 0)
        params = tuple(self._read_type(reader, 0) for _ in range(count))
        return MethodSignature(header, 0, rtype, params, count)

    def decode_field(self, blob: bytes | None) -> TypeExpression:
        reader = self._reader(blob)
        if (header := reader.u8()) != CallingConvention.FIELD:
            raise DecodeError(F'Invalid field signature header {header:#04x}.')
        return self._read_type(reader, 0)

    def decode_type_spec(self, blob: bytes | None, depth: int = 0) -> TypeExpression:
        return self._read_type(self._reader(blob), depth)

    @staticmethod
    def _reader(blob: bytes | None) -> DotNetStructReader:
        if blob is None:
            raise DecodeError('The signature blob is missing.')
        return DotNetStructReader(blob)

    def _read_method(self, reader: DotNetStructReader, depth: int) -> MethodSignature:
        header = CallingConvention(reader.u8())
        generic_count = 0
        if header & CallingConvention.GENERIC:
            generic_count = reader.read_dn_unsigned_integer()
        count = reader.read_dn_unsigned_integer()
        rtype = self._read_type(reader, depth)
        params = []
        required = count
        while len(params) < count:
            if reader.u8(peek=True) == ElementType.SENTINEL:
                reader.skip(1)
                required = len(params)
                continue
            params.append(self._read_type(reader, depth))
        return MethodSignature(header, generic_count, rtype, tuple(params), required)

    def _read_type(self, reader: DotNetStructReader, depth: int) -> TypeExpression:
        if depth > MAX_NESTING:
            raise DecodeError('Type expression is nested too deeply.')
        depth += 1
        offset = reader.tell()
        code = reader.u8()
        try:
            code = ElementType(code)
        except ValueError:
            raise DecodeError(F'At offset {offset:#x}: Unknown element type {code:#04x}.')
        if code in PRIMITIVE_NAMES:
            return Primitive(code)
        if code is ElementType.PTR:
            return Pointer(self._read_type(reader, depth))
        if code is ElementType.BYREF:
            return ByReference(self._read_type(reader, depth))
        if code is ElementType.PINNED:
            return Pinned(self._read_type(reader, depth))
        if code in (ElementType.CLASS, ElementType.VALUETYPE):
            return self._read_type_def_or_ref(reader, depth)
        if code in (ElementType.VAR, ElementType.MVAR):
            return GenericParameter(reader.read_dn_unsigned_integer(), code is ElementType.MVAR)
        if code is ElementType.SZARRAY:
            return Array(self._read_type(reader, depth))
        if code is ElementType.ARRAY:
            element = self._read_type(reader, depth)
            rank = reader.read_dn_unsigned_integer()
            if rank < 1:
                raise DecodeError(F'At offset {offset:#x}: Invalid array rank {rank}.')
            sizes = tuple(reader.read_dn_unsigned_integer() for _ in range(reader.read_dn_unsigned_integer()))
            bounds = tuple(reader.read_dn_signed_integer() for _ in range(reader.read_dn_unsigned_integer()))
            return Array(element, rank, sizes, bounds)
        if code is ElementType.GENERICINST:
            generic = self._read_type(reader, depth)
            count = reader.read_dn_unsigned_integer()
            arguments = tuple(self._read_type(reader, depth) for _ in range(count))
            return GenericInstance(generic, arguments)
        if code is ElementType.FNPTR:
            return FunctionPointer(self._read_method(reader, depth))
        if code in (ElementType.CMOD_OPT, ElementType.CMOD_REQD):
            modifier = self._read_type_def_or_ref(reader, depth)
            return Modified(self._read_type(reader, depth), modifier, code is ElementType.CMOD_REQD)
        raise DecodeError(F'At offset {offset:#x}: Unexpected element type {code.name}.')

    def _read_type_def_or_ref(self, reader: DotNetStructReader, depth: int) -> TypeExpression:
        coded = reader.read_dn_unsigned_integer()
        tag, row = coded & 3, coded >> 2
        tables = self.tables
        if row < 1:
            raise DecodeError(F'Type reference {coded:#x} is nil.')
        try:
            if tag == 0:
                td = tables.TypeDef[row - 1]
                return Named(td.TypeName, td.TypeNamespace)
            if tag == 1:
                tr = tables.TypeRef[row - 1]
                return Named(tr.TypeName, tr.TypeNamespace, reference=True)
            if tag == 2:
                ts = tables.TypeSpec[row - 1]
                return self.decode_type_spec(ts.Signature, depth)
        except IndexError:
            raise DecodeError(F'Type reference {coded:#x} points outside of its table.')
        raise DecodeError(F'Invalid TypeDefOrRef tag {tag}.')
