#!/usr/bin/env python3
#
# Self tests for moovscan.boxes.
#

''' Unit tests for the moovscan.boxes module.
'''

from struct import pack
import sys
import unittest

from cs.buffer import CornuCopyBuffer
from cs.logutils import setup_logging
from icontract import ViolationError

from .boxes import (
    ATOM_FIELD_DECODERS,
    ATOM_HEADER_SIZE,
    OPAQUE,
    atom_decoder,
    decode_atom_fields,
    decoder_for,
    language_code,
)
from .fields import FieldDecodeError, TruncationError

IDENTITY_MATRIX = pack(
    '>9l', 0x10000, 0, 0, 0, 0x10000, 0, 0, 0, 0x40000000
)

def make_atom(atom_type, payload=b''):
  ''' Return the bytes of an atom of type `atom_type` containing `payload`.
  '''
  if isinstance(atom_type, str):
    atom_type = atom_type.encode('latin-1')
  return pack('>L', ATOM_HEADER_SIZE + len(payload)) + atom_type + payload

def full_box(version=0, flags=0):
  ''' The version and flags prefix of a full box.
  '''
  return pack('>B', version) + flags.to_bytes(3, 'big')

def mvhd_payload(version=0, duration=1200):
  ''' A movie header payload with a zero matrix.
  '''
  if version == 0:
    times = pack('>LLLL', 1, 2, 600, duration)
  else:
    times = pack('>QQLQ', 1, 2, 600, duration)
  return (
      full_box(version) + times + pack('>LH', 0x10000, 0x100) + bytes(10) +
      bytes(36) + pack('>7L', 0, 0, 0, 0, 0, 0, 2)
  )

def ftyp_payload(major_brand=b'mp42', *compatible_brands):
  ''' A file type payload.
  '''
  return major_brand + bytes(4) + b''.join(compatible_brands)

def decode(atom_type, payload, trailer=b''):
  ''' Decode `payload` as the body of an `atom_type` atom.
      `trailer` follows the atom in the buffer.
      Return `(fields,bfr)`.
  '''
  bfr = CornuCopyBuffer.from_bytes(payload + trailer)
  fields = decode_atom_fields(
      bfr, ATOM_HEADER_SIZE + len(payload), atom_type
  )
  return fields, bfr

class TestRegistry(unittest.TestCase):
  ''' Test the decoder registry.
  '''

  def test_known_decoders(self):
    for atom_type in 'ftyp', 'mvhd', 'tkhd', 'mdhd', 'dref', 'elst', 'hdlr':
      with self.subTest(atom_type=atom_type):
        self.assertIsNotNone(decoder_for(atom_type))

  def test_unknown_is_opaque(self):
    self.assertIsNone(decoder_for('mdat'))
    fields, bfr = decode('mdat', b'\xde\xad\xbe\xef' * 4)
    self.assertIs(fields, OPAQUE)
    # nothing was read
    self.assertEqual(bfr.offset, 0)
    self.assertEqual(repr(OPAQUE), 'OPAQUE')

  def test_duplicate_registration(self):

    def parse_zzzz_atom(bfr, atom_size):
      return {}

    atom_decoder('zzzz')(parse_zzzz_atom)
    try:
      with self.assertRaises(TypeError):
        atom_decoder('zzzz')(parse_zzzz_atom)
    finally:
      del ATOM_FIELD_DECODERS['zzzz']

  def test_bad_type_code(self):
    with self.assertRaises(ViolationError):
      atom_decoder('abc')

class TestFTYP(unittest.TestCase):
  ''' Test the 'ftyp' decoder.
  '''

  def test_mp42(self):
    fields, _ = decode('ftyp', ftyp_payload(b'mp42', b'isom'))
    self.assertEqual(
        fields, {
            'major_brand': 'mp42',
            'minor_version': '0.0',
            'compatible_brands': ['isom'],
        }
    )

  def test_no_compatible_brands(self):
    fields, _ = decode('ftyp', ftyp_payload(b'qt  '))
    self.assertEqual(fields['major_brand'], 'qt  ')
    self.assertEqual(fields['compatible_brands'], [])

  def test_several_brands(self):
    fields, bfr = decode(
        'ftyp', ftyp_payload(b'M4A ', b'M4A ', b'mp42', b'isom'), b'trailer!'
    )
    self.assertEqual(fields['compatible_brands'], ['M4A ', 'mp42', 'isom'])
    self.assertEqual(bfr.offset, 20)

  def test_truncated(self):
    bfr = CornuCopyBuffer.from_bytes(b'mp42\x00\x00')
    with self.assertRaises(TruncationError):
      decode_atom_fields(bfr, 24, 'ftyp')

class TestMVHD(unittest.TestCase):
  ''' Test the 'mvhd' decoder.
  '''

  def test_zero_matrix(self):
    payload = mvhd_payload()
    self.assertEqual(len(payload), 100)
    fields, bfr = decode('mvhd', payload)
    self.assertEqual(fields['matrix_structure'], [0] * 9)
    self.assertEqual(fields['version'], 0)
    self.assertEqual(fields['tscale'], 600)
    self.assertEqual(fields['duration'], 1200)
    self.assertEqual(fields['preferred_rate'], 0x10000)
    self.assertEqual(fields['preferred_volume'], 0x100)
    self.assertEqual(fields['next_trak_id'], 2)
    self.assertEqual(bfr.offset, 100)

  def test_version_1(self):
    fields, bfr = decode('mvhd', mvhd_payload(1, duration=1 << 33))
    self.assertEqual(fields['version'], 1)
    self.assertEqual(fields['duration'], 1 << 33)
    self.assertEqual(fields['next_trak_id'], 2)
    self.assertEqual(bfr.offset, 112)

  def test_unsupported_version(self):
    with self.assertRaises(FieldDecodeError):
      decode('mvhd', full_box(2) + bytes(96))

  def test_truncated(self):
    with self.assertRaises(TruncationError):
      decode('mvhd', mvhd_payload()[:50])

class TestTKHD(unittest.TestCase):
  ''' Test the 'tkhd' decoder.
  '''

  def test_version_0(self):
    payload = (
        full_box(0, 3) + pack('>LLL', 1, 2, 1) + bytes(4) + pack('>L', 1200) +
        bytes(8) + pack('>HHH', 0, 0, 0) + bytes(2) + IDENTITY_MATRIX +
        pack('>LL', (640 << 16) | 0x8000, 480 << 16)
    )
    self.assertEqual(len(payload), 84)
    fields, _ = decode('tkhd', payload)
    self.assertEqual(fields['flags'], 3)
    self.assertEqual(fields['trak_id'], 1)
    self.assertEqual(fields['duration'], 1200)
    self.assertEqual(
        fields['matrix_structure'],
        [0x10000, 0, 0, 0, 0x10000, 0, 0, 0, 0x40000000],
    )
    self.assertEqual(fields['track_width'], 640.5)
    self.assertEqual(fields['track_height'], 480.0)

class TestMDHD(unittest.TestCase):
  ''' Test the 'mdhd' decoder.
  '''

  def test_language(self):
    self.assertEqual(language_code(0x55c4), 'und')
    self.assertEqual(language_code(0x15c7), 'eng')

  def test_version_0(self):
    payload = full_box() + pack('>LLLL', 1, 2, 44100, 88200) + pack(
        '>HH', 0x15c7, 0
    )
    fields, bfr = decode('mdhd', payload)
    self.assertEqual(fields['tscale'], 44100)
    self.assertEqual(fields['duration'], 88200)
    self.assertEqual(fields['language'], 0x15c7)
    self.assertEqual(fields['language_code'], 'eng')
    self.assertEqual(fields['quality'], 0)
    self.assertEqual(bfr.offset, 24)

class TestDREF(unittest.TestCase):
  ''' Test the 'dref' decoder.
  '''

  URL_ENTRY = pack('>L', 12) + b'url ' + b'\x00' + b'\x00\x00\x01'

  def test_one_entry(self):
    fields, _ = decode('dref', full_box() + pack('>L', 1) + self.URL_ENTRY)
    self.assertEqual(fields['entry_count'], 1)
    self.assertEqual(
        fields['entries'], [
            {
                'size': 12,
                'type': 'url ',
                'version': 0,
                'flags': 1,
                'data': b'',
            }
        ]
    )

  def test_entry_with_data(self):
    entry = pack('>L', 17) + b'alis' + bytes(4) + b'hello'
    fields, _ = decode('dref', full_box() + pack('>L', 1) + entry)
    self.assertEqual(fields['entries'][0]['data'], b'hello')

  def test_entry_version_and_flags(self):
    # the entry header is a full box header, decoded to integers
    entry = pack('>L', 12) + b'urn ' + full_box(1, 0x000203)
    fields, _ = decode('dref', full_box() + pack('>L', 1) + entry)
    self.assertEqual(fields['entries'][0]['version'], 1)
    self.assertEqual(fields['entries'][0]['flags'], 0x000203)

  def test_entry_count_exceeds_entries(self):
    with self.assertRaises(TruncationError):
      decode('dref', full_box() + pack('>L', 2) + self.URL_ENTRY)

  def test_entry_size_too_small(self):
    entry = pack('>L', 4) + b'url ' + bytes(4)
    with self.assertRaises(FieldDecodeError):
      decode('dref', full_box() + pack('>L', 1) + entry)

  def test_entry_data_past_box(self):
    entry = pack('>L', 1000) + b'url ' + bytes(4) + b'abc'
    with self.assertRaises(TruncationError):
      decode('dref', full_box() + pack('>L', 1) + entry, bytes(2000))

class TestELST(unittest.TestCase):
  ''' Test the 'elst' decoder.
  '''

  def test_version_0(self):
    payload = full_box() + pack('>L', 2) + pack(
        '>LlL', 1000, 0, 0x10000
    ) + pack('>LlL', 500, -1, 0x8000)
    fields, _ = decode('elst', payload)
    self.assertEqual(
        fields['entries'], [
            {
                'track_duration': 1000,
                'media_time': 0,
                'media_rate': 1.0
            },
            {
                'track_duration': 500,
                'media_time': -1,
                'media_rate': 0.5
            },
        ]
    )

  def test_version_1(self):
    payload = full_box(1) + pack('>L', 1) + pack('>QqL', 1 << 40, -1, 0x10000)
    fields, _ = decode('elst', payload)
    self.assertEqual(fields['entries'][0]['track_duration'], 1 << 40)
    self.assertEqual(fields['entries'][0]['media_time'], -1)

  def test_entry_count_too_large(self):
    payload = full_box() + pack('>L', 0x7fffffff) + pack('>LlL', 1, 0, 0)
    with self.assertRaises(TruncationError):
      decode('elst', payload)

class TestHDLR(unittest.TestCase):
  ''' Test the 'hdlr' decoder.
  '''

  HEADER = full_box() + b'mhlr' + b'vide' + b'appl' + bytes(8)

  def test_name_bounded_by_box(self):
    payload = self.HEADER + b'VideoHandler\x00'
    fields, bfr = decode('hdlr', payload, make_atom('free', bytes(8)))
    self.assertEqual(fields['component_type'], 'mhlr')
    self.assertEqual(fields['component_subtype'], 'vide')
    self.assertEqual(fields['component_manufacturer'], 'appl')
    self.assertEqual(fields['component_name'], b'VideoHandler\x00')
    self.assertEqual(bfr.offset, len(payload))

  def test_empty_name(self):
    fields, _ = decode('hdlr', self.HEADER)
    self.assertEqual(fields['component_name'], b'')

  def test_box_too_small(self):
    bfr = CornuCopyBuffer.from_bytes(self.HEADER)
    with self.assertRaises(FieldDecodeError):
      decode_atom_fields(bfr, ATOM_HEADER_SIZE + 10, 'hdlr')

def selftest(argv):
  ''' Run the unit tests.
  '''
  setup_logging(__file__)
  unittest.main(__name__, None, argv)

if __name__ == '__main__':
  selftest(sys.argv)
