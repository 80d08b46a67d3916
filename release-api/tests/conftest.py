import sys
from pathlib import Path


# Ensure release-api and the cluster adapter are importable for tests that import modules directly.
RELEASE_API_DIR = Path(__file__).resolve().parents[1]
CLUSTER_ADAPTER_DIR = RELEASE_API_DIR.parent / "cluster-adapter"
for path in (RELEASE_API_DIR, CLUSTER_ADAPTER_DIR):
    if str(path) not in sys.path:
        sys.path.insert(0, str(path))
