"""
Exceptions raised while parsing .NET modules and portable PDB files.
"""
from __future__ import annotations


class ParserException(RuntimeError):
    pass


class DecodeError(ParserException):
    """
    A signature, attribute value, or packed length could not be decoded. This error never leaves
    the decoder of the member that caused it; it is converted into a sentinel value.
    """


class CorrelationError(ParserException):
    """
    The portable PDB is malformed or does not belong to the analyzed module.
    """


class BuildError(RuntimeError):
    """
    An unexpected failure occurred while assembling the model.
    """


class FormatError(ValueError):
    """
    The input is not a PE image, or the image does not carry .NET metadata.
    """
    NOT_AN_IMAGE = 'not a valid image'
    NO_METADATA = 'no metadata present'

    def __init__(self, msg=None):
        ValueError.__init__(self, msg or self.NOT_AN_IMAGE)
