#!/usr/bin/env python3
from __future__ import annotations

import os
import pathlib
import sys

import setuptools
import toml

__minver__ = '3.9'
__slogan__ = 'Extracts a browsable model from the metadata of .NET modules and portable PDB files.'
__author__ = 'dnlens contributors'
__topics__ = [
    'Development Status :: 3 - Alpha',
    'Operating System :: OS Independent',
    'Programming Language :: Python :: 3 :: Only',
    'Topic :: Software Development :: Disassemblers',
    'Topic :: Software Development :: Debuggers',
]


def get_config():
    here = pathlib.Path(__file__).parent.absolute()
    sys.path.insert(0, str(here))

    import dnlens

    def get_setup_readme(filename: str | pathlib.Path | None = None):
        if filename is None:
            filename = here.joinpath('README.md')
        if not os.path.exists(filename):
            return __slogan__
        with open(filename, 'r', encoding='UTF8') as README:
            return README.read()

    ppcfg: dict[str, dict[str, list[str]]] = toml.load(here.joinpath('pyproject.toml'))
    requirements = [
        r for r in ppcfg['build-system']['requires'] if not r.startswith(('setuptools', 'toml'))]

    return dict(
        name=dnlens.__distribution__,
        version=dnlens.__version__,
        description=__slogan__,
        long_description=get_setup_readme(),
        long_description_content_type='text/markdown',
        author=__author__,
        python_requires=F'>={__minver__}',
        classifiers=__topics__,
        packages=setuptools.find_packages(include=('dnlens*',)),
        install_requires=requirements,
        extras_require={'test': ['pytest', 'flake8']},
        entry_points={'console_scripts': ['dnlens=dnlens.cli:main']},
    )


if __name__ == '__main__':
    setuptools.setup(**get_config())
