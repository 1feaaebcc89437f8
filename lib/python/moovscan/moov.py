#!/usr/bin/env python3
#
# Identify ISO14496 (MP4, MOV, M4A) files and extract their atom tree.
#

''' Identification of MP4/MOV/M4A files.

    `identify(stream)` checks that the stream starts with an 'ftyp'
    atom, then walks the whole atom tree and returns a `MOOVInfo`
    with the detected brand and the atoms, or `None` if the stream
    is not an ISO14496 file.

    Example:

        from moovscan import identify
        with open('movie.mp4', 'rb') as f:
          info = identify(f)
        if info is not None:
          print(info.file_type)        # eg 'mp4' or 'qt '
          for atom in info.atoms:
            print(atom)
'''

from collections import namedtuple
from contextlib import closing, contextmanager
from dataclasses import dataclass
from getopt import GetoptError
from io import BytesIO
import os
import sys
from typing import Optional

from cs.buffer import CornuCopyBuffer
from cs.cmdutils import BaseCommand, popopts
from cs.logutils import warning
from cs.pfx import Pfx, pfx_call

from .atoms import (
    AtomStructureError,
    DecodeFailure,
    dump_atoms,
    extract_atoms,
    find_by_path,
)
from .boxes import ATOM_HEADER_SIZE
from .fields import FieldDecodeError

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
        'cs.buffer',
        'cs.cmdutils',
        'cs.logutils',
        'cs.pfx',
    ],
    'entry_points': {
        'console_scripts': {
            'moovscan': 'moovscan.moov:main',
        },
    },
}

# We bail out early anyway, so permit a large read at the top level;
# the branch parses take their budget from the enclosing atom size.
MAX_READ = 0xFFFFFFFF

# size, type, major brand, minor version
MINIMUM_FTYP_ATOM_SIZE = 4 + 4 + 4 + 4

class MOOVInfo(namedtuple('MOOVInfo', 'file_type major_brand atoms')):
  ''' The result of a successful `identify`.

      Attributes:
      * `file_type`: the first 3 characters of the major brand,
        eg `'mp4'` for `'mp42'`; the 4th is usually a sub version digit
      * `major_brand`: the full 4 character major brand
      * `atoms`: the top level `Atom`s
  '''

def main(argv=None):
  ''' Command line mode.
  '''
  return MOOVCommand(argv).run()

class MOOVCommand(BaseCommand):
  ''' Command line access to the atom tree of ISO14496 files.
  '''

  GETOPT_SPEC = ''

  @dataclass
  class Options(BaseCommand.Options):
    with_fields: bool = False

  @popopts(with_fields='Include the decoded fields of each atom.')
  def cmd_scan(self, argv):
    ''' Usage: {cmd} paths...
          Report the brand and atom tree of each path.
    '''
    if not argv:
      raise GetoptError("missing paths")
    options = self.options
    xit = 0
    for path in argv:
      with Pfx("%s", path):
        try:
          info = identify(path)
        except (OSError, AtomStructureError, FieldDecodeError) as e:
          warning("parse failed: %s", e)
          xit = 1
          continue
        if info is None:
          warning("not an ISO14496 file")
          xit = 1
          continue
        print(path, info.file_type, repr(info.major_brand))
        dump_atoms(info.atoms, with_fields=options.with_fields)
    return xit

  def cmd_test(self, argv):
    ''' Usage: {cmd} [testnames...]
          Run self tests.
    '''
    # pylint: disable=import-outside-toplevel
    from . import moov_tests
    moov_tests.selftest([self.options.cmd] + argv)

@contextmanager
def atom_buffer(stream):
  ''' Context manager yielding a `CornuCopyBuffer` reading `stream`
      from offset 0.

      `stream` may be a seekable binary file, `bytes`-like data or a
      filesystem path. A file opened here is closed on exit;
      a file supplied by the caller is not.
  '''
  if isinstance(stream, (str, os.PathLike)):
    with pfx_call(open, stream, 'rb') as f:
      with atom_buffer(f) as bfr:
        yield bfr
    return
  if isinstance(stream, (bytes, bytearray, memoryview)):
    stream = BytesIO(stream)
  final_offset = stream.seek(0, os.SEEK_END)
  stream.seek(0)
  bfr = CornuCopyBuffer.from_file(
      stream, offset=0, final_offset=final_offset
  )
  with closing(bfr):
    yield bfr

def matches_moov_definition(bfr: CornuCopyBuffer) -> bool:
  ''' Test whether `bfr` starts with an 'ftyp' atom, without consuming it.

      An MPEG4/MOV/M4A will start with the 'ftyp' atom. The atom
      must have a size of at least 16 to accommodate the size and
      type plus the major brand and minor version fields.
      If it is not there we can be certain this is not our file.
  '''
  size_and_type = bfr.peek(ATOM_HEADER_SIZE, short_ok=True)
  if len(size_and_type) < ATOM_HEADER_SIZE:
    return False
  maybe_atom_size = int.from_bytes(size_and_type[:4], 'big')
  maybe_ftyp_atom_signature = bytes(size_and_type[4:])
  return (
      maybe_atom_size >= MINIMUM_FTYP_ATOM_SIZE
      and maybe_ftyp_atom_signature == b'ftyp'
  )

def identify(stream) -> Optional[MOOVInfo]:
  ''' Identify an ISO14496 file from `stream`,
      a seekable binary file, `bytes`-like data or a filesystem path.
      Return a `MOOVInfo` or `None` if the stream is not an ISO14496 file.

      Parsing the atoms does not read their contents, at least not
      for the atoms we consider opaque, one of which is the 'mdat'
      atom which is most of the file. Those are skipped and their
      location noted.

      Structural errors such as an impossible atom size
      raise an `AtomStructureError`.
  '''
  with atom_buffer(stream) as bfr:
    if not matches_moov_definition(bfr):
      return None
    atoms = extract_atoms(bfr, MAX_READ)
  ftyp_atom = find_by_path(atoms, ['ftyp'])
  if isinstance(ftyp_atom.fields, DecodeFailure):
    raise ftyp_atom.fields.error
  major_brand = ftyp_atom.fields['major_brand']
  return MOOVInfo(
      file_type=major_brand[:3],
      major_brand=major_brand,
      atoms=atoms,
  )

if __name__ == '__main__':
  sys.exit(main(sys.argv))
