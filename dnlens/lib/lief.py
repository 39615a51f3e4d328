"""
A wrapper around the LIEF library, limited to what is needed to locate the metadata of a .NET
module inside a PE image.
"""
from __future__ import annotations

import io

import lief as lib
import lief.PE as PE

if True:
    lib.disable_leak_warning()
    lib.logging.disable()

from dnlens.lib.types import buf

__all__ = [
    'PE',
    'load_pe',
    'load_pe_fast',
    'enum_name',
    'string',
]


def load_pe(
    data: buf,
    parse_exports: bool = True,
    parse_imports: bool = True,
    parse_reloc: bool = True,
    parse_rsrc: bool = True,
    parse_signature: bool = True,
) -> PE.Binary:
    """
    Load a PE file using LIEF. This is an ease-of-use function which forwards the keyword arguments
    to a config object and then invokes the LIEF parser. Everything is parsed by default. For speed
    over completeness, see `dnlens.lib.lief.load_pe_fast`. Raises a `ValueError` if LIEF does not
    recognize the input.
    """
    with io.BytesIO(data) as stream:
        cfg = PE.ParserConfig()
        cfg.parse_exports = bool(parse_exports)
        cfg.parse_imports = bool(parse_imports)
        cfg.parse_reloc = bool(parse_reloc)
        cfg.parse_rsrc = bool(parse_rsrc)
        cfg.parse_signature = bool(parse_signature)
        if parsed := PE.parse(stream, cfg):
            return parsed
        raise ValueError


def load_pe_fast(data: buf) -> PE.Binary:
    """
    This is equivalent to `dnlens.lib.lief.load_pe` with all optional directories disabled; the
    header, section table, data directories and debug entries are still parsed.
    """
    return load_pe(
        data,
        parse_exports=False,
        parse_imports=False,
        parse_reloc=False,
        parse_rsrc=False,
        parse_signature=False,
    )


def enum_name(value) -> str:
    """
    Return the symbolic name of a LIEF enumeration value. Values that have no registered member
    are rendered the way LIEF prints them, with the class prefix removed.
    """
    try:
        name = value.name
    except (AttributeError, ValueError):
        name = None
    if not name:
        name = str(value).rpartition('.')[2]
    return name


def string(value: str | buf) -> str:
    """
    A function to convert LIEF values to a string, regardless of whether it is exposed as bytes
    or string by the foreign interface.
    """
    if not isinstance(value, str):
        if isinstance(value, memoryview):
            value = bytes(value)
        value, _, _ = value.partition(B'\0')
        value = value.decode('utf8')
    return value
