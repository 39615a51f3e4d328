"""
A library to parse the metadata of .NET modules and their portable PDB companions into a
browsable model of types and members.
"""
from __future__ import annotations
