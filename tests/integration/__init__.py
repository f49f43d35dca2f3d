"""
Integration Tests Package for the ParkGate session engine

These tests wire the lifecycle service, barrier gateway and stores
together and drive them the way lane devices and operators would.

Test Categories:
- Session lifecycle over in-memory storage (entry, exit, payment, admin)
- Barrier command ledger, deduplication and emergency open
- SQLAlchemy storage on a temporary SQLite file
- Concurrent callers racing on one session or plate
"""

import sys
from pathlib import Path

# Add the project root to Python path for imports
project_root = Path(__file__).parent.parent.parent
sys.path.insert(0, str(project_root))
