"""
A command line front end that analyzes a .NET module and prints the model as JSON.
"""
from __future__ import annotations

import argparse
import json
import sys

import dnlens

from dnlens.lib.environment import LogLevel, environment, set_log_level


def get_parser() -> argparse.ArgumentParser:
    argp = argparse.ArgumentParser(
        prog='dnlens',
        description='Extract identity, references and types from a .NET module; optionally attach '
                    'source locations from a portable PDB.')
    argp.add_argument(
        'module',
        help='Path of the .NET module to analyze.'
    )
    argp.add_argument(
        '-p', '--pdb',
        metavar='PATH',
        default=None,
        help='Path of a portable PDB file for the module.'
    )
    argp.add_argument(
        '--no-verify',
        dest='verify',
        action='store_false',
        default=None,
        help='Attach source locations even if the PDB id does not match the debug id of the module.'
    )
    argp.add_argument(
        '-v', '--verbose',
        action='count',
        default=0,
        help='Increase the log level; specify twice for debug output.'
    )
    argp.add_argument(
        '-i', '--indent',
        type=int,
        default=4,
        metavar='N',
        help='Indentation of the JSON output, use 0 for a single line. The default is %(default)s.'
    )
    argp.add_argument(
        '-V', '--version',
        action='version',
        version=F'%(prog)s {dnlens.__version__}'
    )
    return argp


def main(argv: list[str] | None = None) -> int:
    """
    Main routine of the dnlens command line interface. The return value is the exit code; it is
    nonzero when the module could not be analyzed or the PDB could not be correlated.
    """
    args = get_parser().parse_args(argv)

    if args.verbose:
        set_log_level(LogLevel.FromVerbosity(args.verbose))
    elif environment.verbosity.value is None:
        set_log_level(LogLevel.WARNING)

    with open(args.module, 'rb') as fd:
        model = dnlens.analyze(fd.read())

    output = {'Assembly': dnlens.to_json(model), 'Pdb': None}
    failed = model.error is not None

    if args.pdb is not None:
        with open(args.pdb, 'rb') as fd:
            result = dnlens.correlate(model, fd.read(), args.verify)
        output['Assembly'] = dnlens.to_json(model)
        output['Pdb'] = {'Success': result.success, 'Error': result.error}
        failed = failed or not result.success

    json.dump(output, sys.stdout, indent=args.indent or None)
    sys.stdout.write('\n')
    return int(failed)


if __name__ == '__main__':
    sys.exit(main())
