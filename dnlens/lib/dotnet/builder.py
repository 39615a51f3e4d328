"""
Assembles an `dnlens.lib.dotnet.model.AssemblyModel` from the metadata of a .NET module. The
builder walks the Assembly, TypeDef and AssemblyRef tables and consults the signature and the
attribute decoders for every member.
"""
from __future__ import annotations

import hashlib

from dnlens.lib.dotnet.attributes import AttributeDecoder, apply_assembly_attributes
from dnlens.lib.dotnet.errors import BuildError, FormatError
from dnlens.lib.dotnet.image import DotNetImage
from dnlens.lib.dotnet.model import (
    AssemblyIdentity,
    AssemblyModel,
    MethodRecord,
    ParameterRecord,
    PropertyRecord,
    ReferenceRecord,
    TypeRecord,
)
from dnlens.lib.dotnet.signatures import SignatureDecoder, render
from dnlens.lib.dotnet.tables import MethodDef, NetTable, TypeDef, make_token
from dnlens.lib.environment import logger
from dnlens.lib.types import buf

log = logger(__name__)

UNKNOWN_TYPE = '?'
ASYNC_PREFIXES = ('Task', 'ValueTask')


def public_key_token(key: bytes | None) -> str | None:
    """
    The public key token is the last 8 bytes of the SHA-1 hash of the public key in reverse order,
    rendered as lowercase hex.
    """
    if not key:
        return None
    return hashlib.sha1(key).digest()[-8:][::-1].hex()


class ModelBuilder:
    """
    Builds the model of a single module. Every call to `build` analyzes the input from scratch.
    """
    def __init__(self, data: buf):
        self.data = data

    def build(self) -> AssemblyModel:
        """
        Never raises; if the analysis fails, the `error` field of the returned model is set and all
        records that were complete at the time of the failure are kept.
        """
        model = AssemblyModel()
        try:
            self._build(model)
        except Exception as E:
            if isinstance(E, FormatError):
                log.info(F'input rejected: {E!s}')
            else:
                log.warning(F'analysis aborted: {E!r}')
            model.error = F'Error analyzing assembly: {E!s}'
        return model

    def _build(self, model: AssemblyModel):
        image = DotNetImage(self.data)
        tables = image.tables
        self.tables = tables
        self.signatures = SignatureDecoder(tables)
        self._identity(model.identity, image)
        for k, typedef in enumerate(tables.TypeDef, 1):
            if record := self._type(k, typedef):
                model.types.append(record)
        for ref in tables.AssemblyRef:
            model.references.append(ReferenceRecord(ref.Name, ref.Version))

    def _identity(self, identity: AssemblyIdentity, image: DotNetImage):
        tables = self.tables
        if not tables.Assembly:
            raise BuildError('The module does not contain an assembly manifest.')
        assembly = tables.Assembly[0]
        identity.name = assembly.Name
        identity.version = assembly.Version
        identity.culture = assembly.Culture
        identity.public_key_token = public_key_token(assembly.PublicKey)
        identity.architecture = image.architecture
        identity.subsystem = image.subsystem
        identity.runtime_version = image.runtime_version
        if codeview := image.codeview:
            identity.codeview_guid = str(codeview.Guid)
            identity.codeview_age = codeview.Age
            identity.pdb_path = codeview.Path
        apply_assembly_attributes(identity, AttributeDecoder(tables).assembly_attributes())

    def _type(self, row: int, typedef: TypeDef) -> TypeRecord | None:
        if not typedef.TypeNamespace or typedef.TypeName.startswith('<'):
            return None
        tables = self.tables
        flags = typedef.Attributes
        methods = tables.methods_of(row)
        record = TypeRecord(
            typedef.TypeName,
            typedef.TypeNamespace,
            is_public=bool(flags.Public),
            is_class=not flags.Interface,
            is_interface=bool(flags.Interface),
            is_abstract=bool(flags.Abstract),
            is_sealed=bool(flags.Sealed),
            method_token=make_token(NetTable.MethodDef, methods[0]) if methods else 0,
        )
        excluded: set[int] = set()
        for p in tables.properties_of(row):
            record.properties.append(self._property(p, excluded))
        for m in methods:
            if m in excluded:
                continue
            method = tables.MethodDef[m - 1]
            if method.Name.startswith(('<', '.')):
                continue
            record.methods.append(self._method(m, method))
        return record

    def _property(self, row: int, excluded: set[int]) -> PropertyRecord:
        tables = self.tables
        getter, setter = tables.accessors.get(row, (0, 0))
        record = PropertyRecord(tables.Property[row - 1].Name, has_getter=bool(getter), has_setter=bool(setter))
        if getter:
            excluded.add(getter)
            method = tables.MethodDef[getter - 1]
            record.is_public = method.Attributes.Public
            record.is_static = bool(method.Attributes.Static)
            record.type = self._return_type(method)
        if setter:
            excluded.add(setter)
            method = tables.MethodDef[setter - 1]
            if not record.is_public:
                record.is_public = method.Attributes.Public
            if not record.type:
                record.is_static = bool(method.Attributes.Static)
                if parameters := self._parameters(setter, method):
                    record.type = parameters[-1].type
        return record

    def _method(self, row: int, method: MethodDef) -> MethodRecord:
        flags = method.Attributes
        return_type = self._return_type(method)
        return MethodRecord(
            method.Name,
            return_type=return_type,
            parameters=self._parameters(row, method),
            is_public=flags.Public,
            is_static=bool(flags.Static),
            is_abstract=bool(flags.Abstract),
            is_virtual=bool(flags.Virtual),
            is_async=return_type.startswith(ASYNC_PREFIXES),
            token=make_token(NetTable.MethodDef, row),
        )

    def _return_type(self, method: MethodDef) -> str:
        signature = self.signatures.method_signature(method.Signature)
        if signature is None:
            return UNKNOWN_TYPE
        return render(signature.return_type)

    def _parameters(self, row: int, method: MethodDef) -> list[ParameterRecord]:
        signature = self.signatures.method_signature(method.Signature)
        if signature is None:
            return []
        tables = self.tables
        names: dict[int, str] = {}
        for p in tables.params_of(row):
            try:
                param = tables.Param[p - 1]
            except IndexError:
                continue
            names.setdefault(param.Sequence, param.Name)
        return [
            ParameterRecord(names.get(k, F'arg{k - 1}'), render(t))
            for k, t in enumerate(signature.parameter_types, 1)
        ]