#!/usr/bin/env python3
#
# Field decoders for the ISO14496 atoms we understand.
#

''' The registry of atom field decoders.

    Each decoder is registered against a 4 character atom type
    with the `@atom_decoder` decorator and is called as
    `decoder(bfr,atom_size)` where `bfr` is a `CornuCopyBuffer`
    positioned just past the 8 byte atom header and bounded to the
    atom's declared extent, and `atom_size` is the declared total
    size of the atom including its header.
    It returns an ordered `dict` of the decoded fields.

    Atoms with no registered decoder are opaque:
    `decode_atom_fields` returns the `OPAQUE` sentinel for them
    without reading anything from the buffer.

    The section numbers below refer to ISO14496-12; the QuickTime
    File Format names the same fields slightly differently and
    the field names here follow the QuickTime naming.
'''

from typing import Dict, Optional

from cs.buffer import CornuCopyBuffer
from cs.logutils import debug
from cs.pfx import Pfx
from icontract import require
from typeguard import typechecked

from .fields import (
    FULL_BOX_HEADER,
    Bytes,
    DecodeFunc,
    FieldDecodeError,
    Fixed16_16,
    FourCC,
    BCDVersion,
    Int32BE,
    Int64BE,
    TruncationError,
    UInt16BE,
    UInt32BE,
    UInt64BE,
    layout_size,
    read_bytes,
    read_fields,
    unpack_fields,
)

__version__ = '20261019'

DISTINFO = {
    'keywords': ["python3"],
    'classifiers': [
        "Programming Language :: Python :: 3",
        "Topic :: Multimedia :: Video",
    ],
    'install_requires': [
        'cs.binary',
        'cs.buffer',
        'cs.logutils',
        'cs.pfx',
        'icontract',
        'typeguard',
    ],
}

ATOM_HEADER_SIZE = 8

class _Opaque:
  ''' The type of the `OPAQUE` sentinel.
  '''

  def __repr__(self):
    return 'OPAQUE'

  def __reduce__(self):
    return 'OPAQUE'

# the fields of a leaf atom whose content was deliberately not read
OPAQUE = _Opaque()

ATOM_FIELD_DECODERS: Dict[str, DecodeFunc] = {}

@require(lambda atom_type: len(atom_type) == 4)
def atom_decoder(atom_type: str):
  ''' Decorator to register a field decoder for `atom_type`.
  '''

  def register(decode_func):
    if atom_type in ATOM_FIELD_DECODERS:
      raise TypeError(
          f'atom type {atom_type!r} already has a decoder:'
          f' {ATOM_FIELD_DECODERS[atom_type].__name__}'
      )
    ATOM_FIELD_DECODERS[atom_type] = decode_func
    return decode_func

  return register

def decoder_for(atom_type: str) -> Optional[DecodeFunc]:
  ''' Return the decoder registered for `atom_type`, or `None`.
  '''
  return ATOM_FIELD_DECODERS.get(atom_type)

@typechecked
def decode_atom_fields(bfr: CornuCopyBuffer, atom_size: int, atom_type: str):
  ''' Decode the fields of an atom of type `atom_type`
      whose declared size is `atom_size`.
      Return the field `dict`, or `OPAQUE` if there is no decoder
      for this type, in which case `bfr` is not touched.
  '''
  decode = decoder_for(atom_type)
  if decode is None:
    return OPAQUE
  return decode(bfr, atom_size)

def atom_end_offset(bfr: CornuCopyBuffer, atom_size: int) -> int:
  ''' The end offset of an atom whose body starts at `bfr.offset`.
      Only meaningful on entry to a decoder.
  '''
  return bfr.offset + atom_size - ATOM_HEADER_SIZE

def unpack_matrix(matrix_bs: bytes):
  ''' Unpack a 36 byte transformation matrix into 9 signed 32 bit integers.
  '''
  return [
      Int32BE.decode(matrix_bs[offset:offset + 4])
      for offset in range(0, 36, 4)
  ]

def _read_versioned(bfr, v0_layout, v1_layout, tail_layout):
  ''' Read a full box header, then the version 0 or version 1 layout,
      then the common tail layout.
  '''
  fields = read_fields(bfr, FULL_BOX_HEADER)
  version = fields['version']
  if version == 0:
    fields.update(read_fields(bfr, v0_layout))
  elif version == 1:
    fields.update(read_fields(bfr, v1_layout))
  else:
    raise FieldDecodeError(f'unsupported version {version}')
  fields.update(read_fields(bfr, tail_layout))
  return fields

@atom_decoder('ftyp')
def parse_ftyp_atom(bfr: CornuCopyBuffer, atom_size: int):
  ''' An 'ftyp' File Type box - ISO14496 section 4.3.
      The compatible brands fill the remainder of the box,
      4 bytes each, so their count is `(atom_size-16)//4`.
  '''
  fields = read_fields(
      bfr, (
          ('major_brand', FourCC),
          ('minor_version', BCDVersion),
      )
  )
  num_brands = max(0, (atom_size - ATOM_HEADER_SIZE - 8) // 4)
  brands_bs = read_bytes(bfr, 4 * num_brands)
  fields['compatible_brands'] = [
      FourCC.decode(brands_bs[offset:offset + 4])
      for offset in range(0, len(brands_bs), 4)
  ]
  return fields

MVHD_V0_TIMES = (
    ('ctime', UInt32BE),
    ('mtime', UInt32BE),
    ('tscale', UInt32BE),
    ('duration', UInt32BE),
)
MVHD_V1_TIMES = (
    ('ctime', UInt64BE),
    ('mtime', UInt64BE),
    ('tscale', UInt32BE),
    ('duration', UInt64BE),
)
MVHD_TAIL = (
    ('preferred_rate', UInt32BE),
    ('preferred_volume', UInt16BE),
    ('reserved', Bytes(10)),
    ('matrix_structure', Bytes(36)),
    ('preview_time', UInt32BE),
    ('preview_duration', UInt32BE),
    ('poster_time', UInt32BE),
    ('selection_time', UInt32BE),
    ('selection_duration', UInt32BE),
    ('current_time', UInt32BE),
    ('next_trak_id', UInt32BE),
)

@atom_decoder('mvhd')
def parse_mvhd_atom(bfr: CornuCopyBuffer, _):
  ''' An 'mvhd' Movie Header box - ISO14496 section 8.2.2.
  '''
  fields = _read_versioned(bfr, MVHD_V0_TIMES, MVHD_V1_TIMES, MVHD_TAIL)
  fields['matrix_structure'] = unpack_matrix(fields['matrix_structure'])
  return fields

TKHD_V0_TIMES = (
    ('ctime', UInt32BE),
    ('mtime', UInt32BE),
    ('trak_id', UInt32BE),
    ('reserved_1', Bytes(4)),
    ('duration', UInt32BE),
)
TKHD_V1_TIMES = (
    ('ctime', UInt64BE),
    ('mtime', UInt64BE),
    ('trak_id', UInt32BE),
    ('reserved_1', Bytes(4)),
    ('duration', UInt64BE),
)
TKHD_TAIL = (
    ('reserved_2', Bytes(8)),
    ('layer', UInt16BE),
    ('alternate_group', UInt16BE),
    ('volume', UInt16BE),
    ('reserved_3', Bytes(2)),
    ('matrix_structure', Bytes(36)),
    ('track_width', Fixed16_16),
    ('track_height', Fixed16_16),
)

@atom_decoder('tkhd')
def parse_tkhd_atom(bfr: CornuCopyBuffer, _):
  ''' A 'tkhd' Track Header box - ISO14496 section 8.3.2.
      The track dimensions are 16.16 fixed point, decoded as `float`s.
  '''
  fields = _read_versioned(bfr, TKHD_V0_TIMES, TKHD_V1_TIMES, TKHD_TAIL)
  fields['matrix_structure'] = unpack_matrix(fields['matrix_structure'])
  return fields

MDHD_V0_TIMES = MVHD_V0_TIMES
MDHD_V1_TIMES = MVHD_V1_TIMES
MDHD_TAIL = (
    ('language', UInt16BE),
    ('quality', UInt16BE),
)

def language_code(packed: int) -> str:
  ''' The ISO 639-2/T language code from its packed 16 bit form,
      three 5 bit letters offset from 0x60.
  '''
  return bytes(
      ((packed >> shift) & 0x1f) + 0x60 for shift in (10, 5, 0)
  ).decode('latin-1')

@atom_decoder('mdhd')
def parse_mdhd_atom(bfr: CornuCopyBuffer, _):
  ''' An 'mdhd' Media Header box - ISO14496 section 8.4.2.
  '''
  fields = _read_versioned(bfr, MDHD_V0_TIMES, MDHD_V1_TIMES, MDHD_TAIL)
  fields['language_code'] = language_code(fields['language'])
  return fields

ENTRY_COUNT_HEADER = FULL_BOX_HEADER + (('entry_count', UInt32BE),)

# each entry is itself a full box, eg 'url ' or 'urn '
DREF_ENTRY_HEADER = (
    ('size', UInt32BE),
    ('type', FourCC),
) + FULL_BOX_HEADER

@atom_decoder('dref')
def parse_dref_atom(bfr: CornuCopyBuffer, atom_size: int):
  ''' A 'dref' Data Reference box - ISO14496 section 8.7.2.
      Each entry declares its own size; its payload is the
      `size-12` bytes following its header.
  '''
  end_offset = atom_end_offset(bfr, atom_size)
  fields = read_fields(bfr, ENTRY_COUNT_HEADER)
  entry_header_size = layout_size(DREF_ENTRY_HEADER)
  entries = []
  for entry_index in range(fields['entry_count']):
    with Pfx("entry %d", entry_index):
      entry = read_fields(bfr, DREF_ENTRY_HEADER)
      entry_size = entry['size']
      if entry_size < entry_header_size:
        raise FieldDecodeError(
            f'entry size {entry_size} < entry header size {entry_header_size}'
        )
      data_size = entry_size - entry_header_size
      remaining = end_offset - bfr.offset
      if data_size > remaining:
        raise TruncationError(
            f'entry data size {data_size} exceeds the {remaining} bytes'
            ' remaining in the box'
        )
      entry['data'] = read_bytes(bfr, data_size)
      entries.append(entry)
  fields['entries'] = entries
  return fields

ELST_V0_ENTRY = (
    ('track_duration', UInt32BE),
    ('media_time', Int32BE),
    ('media_rate', Fixed16_16),
)
ELST_V1_ENTRY = (
    ('track_duration', UInt64BE),
    ('media_time', Int64BE),
    ('media_rate', Fixed16_16),
)

@atom_decoder('elst')
def parse_elst_atom(bfr: CornuCopyBuffer, atom_size: int):
  ''' An 'elst' Edit List box - ISO14496 section 8.6.6.
  '''
  end_offset = atom_end_offset(bfr, atom_size)
  fields = read_fields(bfr, ENTRY_COUNT_HEADER)
  version = fields['version']
  if version == 0:
    entry_layout = ELST_V0_ENTRY
  elif version == 1:
    entry_layout = ELST_V1_ENTRY
  else:
    raise FieldDecodeError(f'unsupported version {version}')
  entry_count = fields['entry_count']
  entry_size = layout_size(entry_layout)
  entries_size = entry_count * entry_size
  remaining = end_offset - bfr.offset
  if entries_size > remaining:
    raise TruncationError(
        f'{entry_count} entries need {entries_size} bytes'
        f' but only {remaining} remain in the box'
    )
  # one read for all the entries, then split
  entries_bs = read_bytes(bfr, entries_size)
  fields['entries'] = [
      unpack_fields(entries_bs[offset:offset + entry_size], entry_layout)
      for offset in range(0, len(entries_bs), entry_size)
  ]
  return fields

HDLR_HEADER = FULL_BOX_HEADER + (
    ('component_type', FourCC),
    ('component_subtype', FourCC),
    ('component_manufacturer', FourCC),
    ('component_flags', Bytes(4)),
    ('component_flags_mask', Bytes(4)),
)

@atom_decoder('hdlr')
def parse_hdlr_atom(bfr: CornuCopyBuffer, atom_size: int):
  ''' An 'hdlr' Handler Reference box - ISO14496 section 8.4.3.
      The name has no length prefix and need not be NUL terminated,
      so it is the remainder of the box as declared by `atom_size`.
  '''
  end_offset = atom_end_offset(bfr, atom_size)
  fields = read_fields(bfr, HDLR_HEADER)
  name_length = end_offset - bfr.offset
  if name_length < 0:
    raise FieldDecodeError(
        f'box size {atom_size} too small for the handler header'
    )
  fields['component_name'] = read_bytes(bfr, name_length)
  debug(
      "hdlr %s/%s name=%r", fields['component_type'],
      fields['component_subtype'], fields['component_name']
  )
  return fields
