"""
Shared test configuration
"""

import os

# Cheap PIN hashing for tests; must be set before bank_ledger.config loads
os.environ.setdefault("BANK_LEDGER_PIN_HASH_N", "1024")
