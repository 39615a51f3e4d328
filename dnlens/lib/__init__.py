"""
Library modules used by the dnlens metadata engine: binary reading primitives, the LIEF wrapper,
environment configuration, and the .NET parsers in `dnlens.lib.dotnet`.
"""
