#!/usr/bin/env python3

import os
import sys

import pytest

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from helpers import fill_scenario, make_tar, write_archive  # noqa: E402

from tarfscore.archive import open_archive  # noqa: E402
from tarfscore.filesystem import FilesystemAdapter  # noqa: E402

assertion_count = 0


def pytest_assertion_pass(item, lineno, orig, expl):
    global assertion_count
    assertion_count += 1


def pytest_terminal_summary(terminalreporter, exitstatus, config):
    print(f'{assertion_count} assertions tested.')


@pytest.fixture
def scenario_path(tmp_path):
    """An archive containing 'dir/', 'dir/file.txt' with 10 bytes, and 'link.txt' as hardlink to the latter."""
    return write_archive(tmp_path, 'scenario', make_tar(fill_scenario))


@pytest.fixture
def scenario(scenario_path):
    return FilesystemAdapter(open_archive(scenario_path))
