from setuptools import setup

setup (name = 'moovscan',
       version = '20261019',
       description = 'Identify MP4/MOV/M4A files and extract their atom tree.',
       package_dir = {'': 'lib/python'},
       packages = ['moovscan'],
       python_requires = '>=3.8',
       install_requires = [
           'cs.binary',
           'cs.buffer>=20250428',
           'cs.cmdutils',
           'cs.logutils',
           'cs.pfx',
           'icontract',
           'typeguard',
       ],
       extras_require = {
           'test': ['pytest'],
       },
       entry_points = {
           'console_scripts': ['moovscan = moovscan.moov:main'],
       })
