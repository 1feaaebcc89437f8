#!/usr/bin/env python3

''' Identify MP4, MOV and M4A files and extract their atom tree
    without reading the media data.

    ISO14496 files (MPEG-4 Part 12, the QuickTime file format and
    their relatives) are a tree of atoms, also called boxes.
    `identify` checks the leading 'ftyp' atom, walks the tree and
    returns the detected brand and the atoms with the fields of
    the well known header atoms decoded.

    Example:

        >>> from moovscan import identify, find_by_path
        >>> info = identify('movie.mp4')  # doctest: +SKIP
        >>> info.file_type  # doctest: +SKIP
        'mp4'
        >>> find_by_path(info.atoms, 'moov.mvhd').fields['tscale']  # doctest: +SKIP
        600

    The package also provides the `moovscan` command
    to print the atom tree of files from the command line.
'''

from .atoms import (
    Atom,
    AtomDepthError,
    AtomStructureError,
    DecodeFailure,
    ExtendedSizeError,
    MalformedSizeError,
    dump_atoms,
    extract_atoms,
    find_by_path,
    walk_atoms,
)
from .boxes import OPAQUE
from .fields import FieldDecodeError, TruncationError
from .moov import MOOVInfo, identify, matches_moov_definition

__version__ = '20261019'

DISTINFO = {
    'keywords': ["python3"],
    'classifiers': [
        "Development Status :: 4 - Beta",
        "Environment :: Console",
        "Intended Audience :: Developers",
        "Programming Language :: Python :: 3",
        "Topic :: Multimedia :: Video",
    ],
    'install_requires': [
        'cs.binary',
        'cs.buffer>=20250428',
        'cs.cmdutils',
        'cs.logutils',
        'cs.pfx',
        'icontract',
        'typeguard',
    ],
    'entry_points': {
        'console_scripts': {
            'moovscan': 'moovscan.moov:main',
        },
    },
}
