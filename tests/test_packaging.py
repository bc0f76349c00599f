import os
import re
import sys

ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), '..'))


def test_python_floor_matches_annotation_syntax():
    # shared modules use ``X | None`` annotations, evaluated at definition time
    with open(os.path.join(ROOT, 'pyproject.toml')) as fh:
        text = fh.read()
    floor = re.search(r'requires-python\s*=\s*">=(\d+)\.(\d+)"', text)
    assert floor is not None
    assert (int(floor.group(1)), int(floor.group(2))) >= (3, 10)
    assert sys.version_info >= (3, 10)
