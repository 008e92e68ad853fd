import sys
from pathlib import Path


def pytest_configure() -> None:
    """Make the repository root and `tests/` importable without installation."""
    tests_dir = Path(__file__).resolve().parent
    sys.path.insert(0, str(tests_dir.parent))
    sys.path.insert(0, str(tests_dir))
