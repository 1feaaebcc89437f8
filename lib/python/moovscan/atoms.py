#!/usr/bin/env python3
#
# Recursive descent over the ISO14496 atom (box) tree.
#

''' The atom tree walker.

    An ISO14496 file (MP4, MOV, M4A) is a sequence of atoms,
    each an 8 byte header (a 32 bit big endian size including the
    header and a 4 byte type code) followed by a payload which
    may itself be a sequence of atoms.

    `extract_atoms` walks one level of that structure, recursing
    into the atom types known to be containers and handing leaf
    atoms to the field decoders in `moovscan.boxes`.
    It never reads the payload of an atom it does not understand,
    in particular the (usually huge) 'mdat' media data atom:
    those are recorded by offset and size and skipped.

    Every atom's body is parsed from a buffer bounded to its
    declared extent and the walk always resumes at
    `offset+size`, so a decoder which reads too little cannot
    desynchronise the following siblings and a decoder cannot
    read past the end of its atom.
'''

from collections import namedtuple
from collections.abc import Mapping
import sys
from typing import Iterable, Iterator, Optional, Sequence, Tuple

from cs.buffer import CornuCopyBuffer
from cs.logutils import debug, warning
from cs.pfx import Pfx
from icontract import require

from .boxes import ATOM_HEADER_SIZE, OPAQUE, decode_atom_fields
from .fields import FULL_BOX_HEADER, FieldDecodeError, read_fields

__version__ = '20261019'

DISTINFO = {
    'keywords': ["python3"],
    'classifiers': [
        "Programming Language :: Python :: 3",
        "Topic :: Multimedia :: Video",
    ],
    'install_requires': [
        'cs.buffer',
        'cs.logutils',
        'cs.pfx',
        'icontract',
    ],
}

# Atoms (boxes) that are known to only contain children, no data fields
KNOWN_BRANCH_ATOM_TYPES = frozenset(
    ('moov', 'mdia', 'trak', 'clip', 'edts', 'minf', 'dinf', 'stbl', 'udta',
     'meta')
)

# Atoms (boxes) that are known to contain both children and data fields,
# the udta.meta thing used by iTunes
KNOWN_BRANCH_AND_LEAF_ATOM_TYPES = frozenset(('meta',))

# Limit how many atoms we scan in sequence, to prevent derailments
MAX_ATOMS_AT_LEVEL = 128

# Limit how deeply we nest, to bound recursion on hostile input
MAX_ATOM_DEPTH = 32

class AtomStructureError(ValueError):
  ''' The atom structure itself is unusable; the walk cannot continue.
  '''

class MalformedSizeError(AtomStructureError):
  ''' An atom's declared size is smaller than its header
      or larger than the space its container has left.
  '''

class ExtendedSizeError(AtomStructureError):
  ''' An atom uses the 64 bit extended size form (declared size 1),
      which is not supported.
  '''

class AtomDepthError(AtomStructureError):
  ''' Atoms are nested more deeply than `MAX_ATOM_DEPTH`.
  '''

class DecodeFailure(namedtuple('DecodeFailure', 'error')):
  ''' The fields of a leaf atom whose registered decoder failed.
      `.error` is the exception.
  '''

  def __str__(self):
    return f'{self.__class__.__name__}({self.error})'

class Atom(namedtuple('Atom',
                      'offset size atom_type path children fields')):
  ''' An atom (box) in the tree.

      Attributes:
      * `offset`: the stream offset of the atom header
      * `size`: the declared size of the atom including its header
      * `atom_type`: the 4 character type code
      * `path`: the tuple of type codes from the top level down to this atom
      * `children`: a tuple of child `Atom`s, or `None` for a leaf atom
      * `fields`: `None` for a pure branch atom, otherwise a `dict`
        of decoded fields, or `OPAQUE` if the content was not read,
        or a `DecodeFailure` if decoding failed
  '''

  def __new__(cls, offset, size, atom_type, path, children, fields):
    if children is None and fields is None:
      raise ValueError(
          f'{atom_type!r}@{offset}: an atom needs children or fields or both'
      )
    if children is not None:
      children = tuple(children)
    return super().__new__(
        cls, offset, size, atom_type, tuple(path), children, fields
    )

  def __str__(self):
    return "%s (%s): %d bytes, %s" % (
        self.atom_type,
        '.'.join(self.path),
        self.size,
        self.fields,
    )

  @property
  def shape(self) -> str:
    ''' `'branch'`, `'leaf'` or `'branch+leaf'`.
    '''
    if self.fields is None:
      return 'branch'
    if self.children is None:
      return 'leaf'
    return 'branch+leaf'

  @property
  def end_offset(self) -> int:
    ''' The offset just past the end of this atom.
    '''
    return self.offset + self.size

  @property
  def is_opaque(self) -> bool:
    ''' Whether this atom's content was deliberately left unread.
    '''
    return self.fields is OPAQUE

  @property
  def error(self) -> Optional[Exception]:
    ''' The decode exception if the field decode failed, otherwise `None`.
    '''
    if isinstance(self.fields, DecodeFailure):
      return self.fields.error
    return None

def parse_leaf_fields(bfr: CornuCopyBuffer, atom_size: int, atom_type: str):
  ''' Decode the fields of a leaf atom.
      Decode failures are returned as a `DecodeFailure`.
  '''
  try:
    return decode_atom_fields(bfr, atom_size, atom_type)
  except FieldDecodeError as e:
    warning("field decode failed: %s", e)
    return DecodeFailure(e)

def parse_atom_children_and_data_fields(
    bfr: CornuCopyBuffer, atom_size: int, path: Tuple[str, ...], depth: int
):
  ''' Parse an atom with both data fields and children, such as 'meta'.
      Return `(children,fields)`.

      The ISO form of 'meta' is a full box: a 4 byte version and
      flags precede the children. The QuickTime form has the
      children directly, starting with an 'hdlr' atom. We tell
      them apart by whether the second word of the body is `hdlr`.
  '''
  body_offset = bfr.offset
  head = bfr.peek(ATOM_HEADER_SIZE, short_ok=True)
  if len(head) == ATOM_HEADER_SIZE and head[4:8] == b'hdlr':
    fields = {}
  else:
    try:
      fields = read_fields(bfr, FULL_BOX_HEADER)
    except FieldDecodeError as e:
      warning("field decode failed: %s", e)
      return (), DecodeFailure(e)
  max_read = atom_size - ATOM_HEADER_SIZE - (bfr.offset - body_offset)
  children = extract_atoms(bfr, max_read, path, depth=depth + 1)
  return children, fields

@require(lambda max_read: max_read >= 0)
def extract_atoms(
    bfr: CornuCopyBuffer,
    max_read: int,
    parent_path: Sequence[str] = (),
    depth: int = 0,
    *,
    max_atoms: Optional[int] = None,
) -> Tuple[Atom, ...]:
  ''' Recursive descent parser: scan up to `max_read` bytes of atoms
      from `bfr`, drilling down into the atoms which we know to
      contain child atoms and recovering the data fields of leaf atoms.
      Return a tuple of `Atom`s.

      Parameters:
      * `bfr`: the `CornuCopyBuffer` positioned at the first atom header
      * `max_read`: the byte budget for this level, normally the
        body size of the enclosing atom
      * `parent_path`: the type path of the enclosing atom
      * `depth`: the nesting depth, checked against `MAX_ATOM_DEPTH`
      * `max_atoms`: optional limit on the atoms scanned at this level,
        default `MAX_ATOMS_AT_LEVEL`

      The scan stops quietly when the budget is consumed, when the
      atom limit is reached or when fewer than 8 bytes remain for
      a header (a file which ends part way through an atom).
      An atom whose size is unusable raises an `AtomStructureError`.
  '''
  if depth > MAX_ATOM_DEPTH:
    raise AtomDepthError(
        f'{".".join(parent_path)}: nesting deeper than {MAX_ATOM_DEPTH}'
    )
  if max_atoms is None:
    max_atoms = MAX_ATOMS_AT_LEVEL
  parent_path = tuple(parent_path)
  initial_offset = bfr.offset
  atoms = []
  for _ in range(max_atoms):
    atom_offset = bfr.offset
    consumed = atom_offset - initial_offset
    if consumed >= max_read:
      break
    size_and_type = bfr.take(ATOM_HEADER_SIZE, short_ok=True)
    if len(size_and_type) < ATOM_HEADER_SIZE:
      if size_and_type:
        debug(
            "%s: truncated atom header at offset %d: %r",
            '.'.join(parent_path) or 'top', atom_offset, size_and_type
        )
      break
    atom_size = int.from_bytes(size_and_type[:4], 'big')
    atom_type = bytes(size_and_type[4:]).decode('latin-1')
    with Pfx("%s@%d", atom_type, atom_offset):
      if atom_size == 1:
        raise ExtendedSizeError(
            'atom uses a 64 bit extended size, which is not supported'
        )
      if atom_size < ATOM_HEADER_SIZE:
        raise MalformedSizeError(
            f'declared size {atom_size} < header size {ATOM_HEADER_SIZE}'
        )
      if atom_size > max_read - consumed:
        raise MalformedSizeError(
            f'declared size {atom_size} exceeds the {max_read - consumed}'
            ' bytes remaining in the container'
        )
      end_offset = atom_offset + atom_size
      path = parent_path + (atom_type,)
      with bfr.subbuffer(end_offset) as body_bfr:
        if atom_type in KNOWN_BRANCH_AND_LEAF_ATOM_TYPES:
          children, fields = parse_atom_children_and_data_fields(
              body_bfr, atom_size, path, depth
          )
        elif atom_type in KNOWN_BRANCH_ATOM_TYPES:
          children = extract_atoms(
              body_bfr, atom_size - ATOM_HEADER_SIZE, path, depth=depth + 1
          )
          fields = None
        else:
          children = None
          fields = parse_leaf_fields(body_bfr, atom_size, atom_type)
      atoms.append(
          Atom(atom_offset, atom_size, atom_type, path, children, fields)
      )
      # resume at the declared end, whatever the decode consumed
      try:
        bfr.skipto(end_offset)
      except EOFError as e:
        # an unseekable source ending inside this atom
        debug("input ends inside the atom: %s", e)
        break
  return tuple(atoms)

def find_by_path(atoms: Iterable[Atom],
                 path: Sequence[str]) -> Optional[Atom]:
  ''' Return the first atom found by following `path`
      (a sequence of type codes, or a dot separated string)
      down from the atoms in `atoms`, or `None` if there is no match.

          find_by_path(atoms, ['moov', 'trak', 'mdia', 'hdlr'])
          find_by_path(atoms, 'moov.trak.mdia.hdlr')
  '''
  if isinstance(path, str):
    path = path.split('.')
  atom_type, *sub_path = path
  for atom in atoms:
    if atom.atom_type == atom_type:
      if not sub_path:
        return atom
      if atom.children:
        found = find_by_path(atom.children, sub_path)
        if found is not None:
          return found
  return None

def walk_atoms(atoms: Iterable[Atom]) -> Iterator[Atom]:
  ''' Yield every atom in `atoms` and their descendants, depth first.
  '''
  for atom in atoms:
    yield atom
    if atom.children:
      yield from walk_atoms(atom.children)

def dump_atoms(atoms: Sequence[Atom], file=None, swimlanes=(), with_fields=True):
  ''' Print the atom tree to `file` (default `sys.stdout`),
      one atom per line, with its decoded fields indented beneath it
      if `with_fields` is true.
  '''
  if file is None:
    file = sys.stdout
  n_atoms = len(atoms)
  for i, atom in enumerate(atoms):
    is_last_child = i == n_atoms - 1
    has_children = bool(atom.children)
    connector = '└' if is_last_child else '├'
    connector_down = '┬' if has_children else '─'
    connector_left = ' ' if is_last_child else '│'
    lead = ''.join(swimlanes)
    if with_fields:
      print(f'{lead}{connector}{connector_down}─{atom}', file=file)
      if isinstance(atom.fields, Mapping):
        for field_name, value in atom.fields.items():
          print(f'{lead}{connector_left}   {field_name}: {value!r}', file=file)
    else:
      print(
          f'{lead}{connector}{connector_down}─{atom.atom_type}'
          f' offset={atom.offset} size={atom.size}',
          file=file,
      )
    if atom.children:
      dump_atoms(
          atom.children,
          file=file,
          swimlanes=(*swimlanes, connector_left),
          with_fields=with_fields,
      )
