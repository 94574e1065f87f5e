#!/usr/bin/env python3
# -*- coding: utf-8 -*-

import os
from setuptools import setup

scriptPath = os.path.abspath( os.path.dirname( __file__ ) )
with open( os.path.join( scriptPath, 'README.md' ), encoding = 'utf-8' ) as file:
    readmeContents = file.read()

setup(
    name             = 'tarfs',
    version          = '0.1.0',

    description      = 'Mount (compressed) TAR archives as read-only FUSE filesystems without an index',
    license          = 'MIT',
    classifiers      = [ 'License :: OSI Approved :: MIT License',
                         'Development Status :: 4 - Beta',
                         'Natural Language :: English',
                         'Operating System :: MacOS',
                         'Operating System :: POSIX :: Linux',
                         'Programming Language :: Python :: 3',
                         'Programming Language :: Python :: 3.9',
                         'Programming Language :: Python :: 3.10',
                         'Programming Language :: Python :: 3.11',
                         'Programming Language :: Python :: 3.12',
                         'Topic :: System :: Archiving',
                         'Topic :: System :: Filesystems' ],

    long_description = readmeContents,
    long_description_content_type = 'text/markdown',

    packages         = [ 'tarfscore', 'tarfs' ],
    python_requires  = '>=3.9',
    install_requires = [
        'mfusepy>=1.0',
        'indexed_gzip>=1.6.3',
        'python-xz>=0.4.0',
        'rapidgzip>=0.13.1',
        'rich',
        'zstandard',
    ],
    extras_require   = {
        'test' : [ 'pytest' ],
    },
    entry_points = { 'console_scripts': [ 'tarfs=tarfs.cli:cli' ] }
)
