#!/usr/bin/env python3
#
# Primitive types and declarative field layouts for ISO14496 atoms.
#

''' Decoding of the fixed binary fields found inside ISO14496 atoms.

    There are two layers here:
    * the primitive codec: a closed set of `Primitive` instances
      such as `UInt32BE` or `FourCC`, each with a fixed byte width
      and a decode function, plus the parameterised `Bytes(n)`
      opaque run
    * the field layout decoder: a layout is an ordered sequence of
      `(field_name,Primitive)` pairs; `read_fields` computes the
      total width, takes exactly that many bytes from a buffer in
      one read and decodes them into an ordered `dict`

    Example, the common version and flags header of a "full box":

        >>> FULL_BOX_HEADER = (('version', UInt8), ('flags', UInt24BE))
        >>> layout_size(FULL_BOX_HEADER)
        4
        >>> unpack_fields(b'\\x01\\x00\\x00\\x07', FULL_BOX_HEADER)
        {'version': 1, 'flags': 7}

    Variable length tails, such as a list of brands whose count
    is derived from an earlier field, are not expressible as a
    layout; the individual atom decoders loop over those themselves
    using `read_fields` and `read_bytes`.
'''

from collections import namedtuple
from functools import lru_cache
from typing import Callable, Dict, Iterable, Tuple

from cs.binary import (
    BinaryFixedBytes,
    BinaryStruct,
    Int32BE as BinaryInt32BE,
    UInt8 as BinaryUInt8,
    UInt16BE as BinaryUInt16BE,
    UInt32BE as BinaryUInt32BE,
    UInt64BE as BinaryUInt64BE,
)
from cs.buffer import CornuCopyBuffer
from cs.pfx import Pfx
from icontract import require
from typeguard import typechecked

__version__ = '20261019'

DISTINFO = {
    'keywords': ["python3"],
    'classifiers': [
        "Programming Language :: Python :: 3",
    ],
    'install_requires': [
        'cs.binary',
        'cs.buffer',
        'cs.pfx',
        'icontract',
        'typeguard',
    ],
}

class FieldDecodeError(ValueError):
  ''' The fields of an atom could not be decoded.
      This is scoped to a single atom; the atom walker records it
      against that atom and carries on with the next sibling.
  '''

class TruncationError(FieldDecodeError, EOFError):
  ''' A committed read found fewer bytes than the layout requires.
  '''

class Primitive(namedtuple('Primitive', 'name width decode')):
  ''' A primitive field type: a `name`, a fixed byte `width`
      and a `decode(bytes)` function returning the value.
  '''

  def __str__(self):
    return self.name

  __repr__ = __str__

def binary_primitive(binary_class) -> Primitive:
  ''' Make a `Primitive` from a single field `cs.binary.BinaryStruct` class.
      The decode parses exactly `binary_class.length` bytes
      and returns the field value.
  '''
  return Primitive(
      binary_class.__name__,
      binary_class.length,
      lambda bs: binary_class.from_bytes(bytes(bs))[0],
  )

UInt8 = binary_primitive(BinaryUInt8)
UInt16BE = binary_primitive(BinaryUInt16BE)
UInt32BE = binary_primitive(BinaryUInt32BE)
UInt64BE = binary_primitive(BinaryUInt64BE)
Int32BE = binary_primitive(BinaryInt32BE)
Int64BE = binary_primitive(BinaryStruct('Int64BE', '>q'))

# the 24 bit flags of a full box, assembled from their high byte
# and low 16 bits
UInt24Parts = BinaryStruct('UInt24Parts', '>BH', 'high low')

def decode_uint24be(bs: bytes) -> int:
  ''' Decode 3 bytes as a big endian unsigned integer.
  '''
  parts = UInt24Parts.from_bytes(bytes(bs))
  return (parts.high << 16) | parts.low

UInt24BE = Primitive('UInt24BE', UInt24Parts.length, decode_uint24be)

# 16.16 fixed point, eg track dimensions and playback rates
Fixed16_16 = Primitive(
    'Fixed16_16',
    BinaryUInt32BE.length,
    lambda bs: BinaryUInt32BE.from_bytes(bytes(bs)).value / 65536.0,
)

FourCCBytes = BinaryFixedBytes('FourCCBytes', 4)

# latin-1 so that every byte value survives as one character
FourCC = Primitive(
    'FourCC',
    FourCCBytes.length,
    lambda bs: FourCCBytes.from_bytes(bytes(bs)).data.decode('latin-1'),
)

BCDParts = BinaryStruct('BCDParts', '>HH', 'major minor')

def decode_bcd_version(bs: bytes) -> str:
  ''' Decode 4 bytes as a `"major.minor"` version string,
      each half being a 16 bit binary coded decimal value.

      Since a BCD value's hexadecimal rendition is its decimal
      rendition, a nibble above 9 comes out as a hex digit
      instead of failing.

          >>> decode_bcd_version(b'\\0\\0\\0\\0')
          '0.0'
          >>> decode_bcd_version(b'\\x00\\x12\\x00\\x03')
          '12.3'
  '''
  if len(bs) != BCDParts.length:
    raise ValueError(f'expected 4 bytes, got {len(bs)}: {bytes(bs)!r}')
  parts = BCDParts.from_bytes(bytes(bs))
  return f'{parts.major:x}.{parts.minor:x}'

BCDVersion = Primitive('BCDVersion', BCDParts.length, decode_bcd_version)

@lru_cache(maxsize=None)
@require(lambda length: length >= 0)
def Bytes(length: int) -> Primitive:
  ''' Return the `Primitive` for an opaque run of `length` bytes.
  '''
  binary_class = BinaryFixedBytes(f'Bytes{length}', length)
  return Primitive(
      binary_class.__name__,
      binary_class.length,
      lambda bs: binary_class.from_bytes(bytes(bs)).data,
  )

def primitive_width(primitive: Primitive) -> int:
  ''' Return the byte width of `primitive`.
      Anything other than a `Primitive` is a programming error.
  '''
  if not isinstance(primitive, Primitive):
    raise TypeError(f'not a Primitive: {primitive!r}')
  return primitive.width

def decode_primitive(primitive: Primitive, bs: bytes):
  ''' Decode the bytes `bs`, which must be exactly the width of `primitive`.
  '''
  width = primitive_width(primitive)
  if len(bs) != width:
    raise ValueError(f'{primitive}: expected {width} bytes, got {len(bs)}')
  return primitive.decode(bs)

Layout = Iterable[Tuple[str, Primitive]]

def layout_size(layout: Layout) -> int:
  ''' The total byte width of the fields in `layout`.
  '''
  return sum(primitive_width(primitive) for _, primitive in layout)

def unpack_fields(bs: bytes, layout: Layout) -> Dict[str, object]:
  ''' Decode `bs` according to `layout`, returning an ordered `dict`
      mapping field names to values.
      `bs` must be exactly `layout_size(layout)` bytes long.
  '''
  size = layout_size(layout)
  if len(bs) != size:
    raise ValueError(f'layout needs {size} bytes, got {len(bs)}')
  fields = {}
  offset = 0
  for field_name, primitive in layout:
    with Pfx(field_name):
      width = primitive.width
      fields[field_name] = decode_primitive(primitive, bs[offset:offset + width])
      offset += width
  return fields

@typechecked
def read_bytes(bfr: CornuCopyBuffer, length: int) -> bytes:
  ''' Take exactly `length` bytes from `bfr`.
      Raise `TruncationError` if the buffer runs short.
  '''
  if length < 0:
    raise ValueError(f'negative read length {length}')
  # refuse reads which cannot be satisfied rather than asking the
  # source for an arbitrarily large amount of data
  final_offset = bfr.final_offset
  if final_offset is not None and bfr.offset + length > final_offset:
    raise TruncationError(
        f'wanted {length} bytes at offset {bfr.offset}'
        f' but the data end at offset {final_offset}'
    )
  bs = bfr.take(length, short_ok=True)
  if len(bs) < length:
    raise TruncationError(
        f'wanted {length} bytes at offset {bfr.offset - len(bs)}'
        f' but only found {len(bs)}'
    )
  return bs

@typechecked
def read_fields(bfr: CornuCopyBuffer, layout: tuple) -> Dict[str, object]:
  ''' Read the fields described by `layout` from `bfr`
      in a single contiguous read, returning an ordered `dict`.
      Raise `TruncationError` if the buffer runs short.
  '''
  return unpack_fields(read_bytes(bfr, layout_size(layout)), layout)

# the version and flags leading every "full box"
FULL_BOX_HEADER = (
    ('version', UInt8),
    ('flags', UInt24BE),
)

# convenience for the atom decoders
DecodeFunc = Callable[[CornuCopyBuffer, int], Dict[str, object]]
