import sys
from pathlib import Path
import pytest

# Ensure project root is on sys.path so tests can import the `picross` package
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


@pytest.fixture(autouse=True)
def reset_process_state():
	# Cached leaderboards and pace curves and dependency overrides must not leak across tests
	from picross.cache import get_cache
	from picross.main import app
	get_cache().clear()
	yield
	app.dependency_overrides.clear()
	get_cache().clear()
