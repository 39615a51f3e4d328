"""
The model of an analyzed .NET assembly. All records are plain dataclasses; the correlation with a
portable PDB is the only step that modifies a model after it was built, and it only fills in the
source location fields.
"""
from __future__ import annotations

import dataclasses

from typing import List, Optional

from dnlens.lib.structures import struct_to_json
from dnlens.lib.types import JSONDict


@dataclasses.dataclass
class ParameterRecord:
    name: str
    type: str


@dataclasses.dataclass
class MethodRecord:
    name: str
    return_type: str = 'void'
    parameters: List[ParameterRecord] = dataclasses.field(default_factory=list)
    is_public: bool = False
    is_static: bool = False
    is_abstract: bool = False
    is_virtual: bool = False
    is_async: bool = False
    token: int = 0
    source_file: Optional[str] = None
    line_number: int = 0

    @property
    def signature(self) -> str:
        parameters = ', '.join(F'{p.type} {p.name}' for p in self.parameters)
        return F'{self.name}({parameters})'

    @property
    def short_signature(self) -> str:
        parameters = ', '.join(p.type for p in self.parameters)
        return F'{self.name}({parameters})'


@dataclasses.dataclass
class PropertyRecord:
    name: str
    type: str = ''
    has_getter: bool = False
    has_setter: bool = False
    is_public: bool = False
    is_static: bool = False


@dataclasses.dataclass
class TypeRecord:
    name: str
    namespace: str
    full_name: str = ''
    is_public: bool = False
    is_class: bool = False
    is_interface: bool = False
    is_abstract: bool = False
    is_sealed: bool = False
    method_token: int = 0
    methods: List[MethodRecord] = dataclasses.field(default_factory=list)
    properties: List[PropertyRecord] = dataclasses.field(default_factory=list)
    source_file: Optional[str] = None

    def __post_init__(self):
        if not self.full_name:
            self.full_name = F'{self.namespace}.{self.name}' if self.namespace else self.name


@dataclasses.dataclass
class ReferenceRecord:
    name: str
    version: str

    def __str__(self):
        return F'{self.name}, Version={self.version}'


@dataclasses.dataclass
class AssemblyIdentity:
    name: str = ''
    version: str = ''
    culture: str = ''
    public_key_token: Optional[str] = None
    architecture: Optional[str] = None
    subsystem: Optional[str] = None
    runtime_version: Optional[str] = None
    target_framework: Optional[str] = None
    is_debug: bool = False
    company: Optional[str] = None
    product: Optional[str] = None
    description: Optional[str] = None
    copyright: Optional[str] = None
    file_version: Optional[str] = None
    informational_version: Optional[str] = None
    configuration: Optional[str] = None
    debug_guid: Optional[str] = None
    source_files_count: int = 0
    codeview_guid: Optional[str] = None
    codeview_age: Optional[int] = None
    pdb_path: Optional[str] = None


@dataclasses.dataclass
class AssemblyModel:
    identity: AssemblyIdentity = dataclasses.field(default_factory=AssemblyIdentity)
    types: List[TypeRecord] = dataclasses.field(default_factory=list)
    references: List[ReferenceRecord] = dataclasses.field(default_factory=list)
    error: Optional[str] = None

    def methods(self):
        """
        Generate pairs of each type record and each of its method records.
        """
        for t in self.types:
            for m in t.methods:
                yield t, m

    def __json__(self) -> JSONDict:
        return {
            'identity': struct_to_json(self.identity),
            'types': [struct_to_json(t) for t in self.types],
            'references': [struct_to_json(r) for r in self.references],
            'error': self.error,
        }


@dataclasses.dataclass
class CorrelationResult:
    success: bool
    error: Optional[str] = None

    def __bool__(self):
        return self.success
