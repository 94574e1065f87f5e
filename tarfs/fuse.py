# This file is supposed to provide the 'fuse' symbol.
# pylint: disable=unused-import

import importlib
import sys

# mfusepy is preferred. An installed fusepy is importable as either 'fuse' or 'fusepy' depending on its packaging.
FUSE_MODULES = ['mfusepy', 'fuse', 'fusepy']


def _import_fuse():
    errors = []
    for name in FUSE_MODULES:
        try:
            return importlib.import_module(name)
        except (ImportError, OSError) as exception:
            errors.append((name, exception))
            if name == FUSE_MODULES[0]:
                print(f"[Warning] Failed to load {name}. Will try fusepy next. Exception was:", exception)

    print("[Error] Did not find any FUSE installation. Please install it, e.g., with:")
    print("[Error]  - apt install libfuse2")
    print("[Error]  - yum install fuse fuse-libs")
    for name, exception in errors:
        print(f"[Error] Exception for {name}:", exception)
    sys.exit(1)


fuse = _import_fuse()
