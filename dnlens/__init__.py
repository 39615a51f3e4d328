"""
The dnlens package extracts a browsable model from the metadata of a .NET module without loading
or executing it: the assembly identity, the referenced assemblies, and the types of the module
with their methods and properties. Source file names and line numbers can be attached to the
methods when a portable PDB for the module is available.

    import dnlens

    with open('Sample.dll', 'rb') as fd:
        model = dnlens.analyze(fd.read())
    with open('Sample.pdb', 'rb') as fd:
        result = dnlens.correlate(model, fd.read())

The model is built by `dnlens.lib.dotnet.builder.ModelBuilder` and the correlation is performed by
`dnlens.lib.dotnet.pdb.DebugCorrelator`; both functions never raise for malformed input but report
the problem as a message.
"""
from __future__ import annotations

__version__ = '0.3.1'
__distribution__ = 'dnlens'

from dnlens.lib.dotnet.builder import ModelBuilder
from dnlens.lib.dotnet.model import AssemblyModel, CorrelationResult
from dnlens.lib.dotnet.pdb import DebugCorrelator
from dnlens.lib.structures import struct_to_json
from dnlens.lib.types import JSONDict, buf

__all__ = [
    'analyze',
    'correlate',
    'to_json',
    'AssemblyModel',
    'CorrelationResult',
]


def analyze(data: buf) -> AssemblyModel:
    """
    Build the model of the .NET module given as raw bytes. If the input cannot be analyzed, the
    `error` field of the model describes the problem.
    """
    return ModelBuilder(data).build()


def correlate(model: AssemblyModel, pdb: buf, verify: bool | None = None) -> CorrelationResult:
    """
    Attach the source locations from a portable PDB to the given model. Unless `verify` is false,
    the PDB has to match the CodeView debug entry of the module. When `verify` is `None`, the
    check is skipped if the `DNLENS_PDB_SKIP_VERIFY` environment variable is set.
    """
    return DebugCorrelator(model).correlate(pdb, verify)


def to_json(model: AssemblyModel) -> JSONDict:
    return struct_to_json(model)
