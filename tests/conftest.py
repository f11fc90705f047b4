import sys
from pathlib import Path

import pytest

# Ensure the repository root is importable as a package root (so `import threadstream` works).
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from threadstream.cache.session_cache import reset_run_slot_cache  # noqa: E402


@pytest.fixture(autouse=True)
def _fresh_run_slots():
    # The run-slot store is process-wide; keep tests independent.
    reset_run_slot_cache()
    yield
    reset_run_slot_cache()
