#!/usr/bin/env python3
"""
Bank Ledger Entry Point

Builds the storage backend, stores, engine and API from configuration,
serves the API, and closes the storage when the server stops.
"""

import sys

from bank_ledger.access import AccessGuard
from bank_ledger.accounts import AccountStore
from bank_ledger.api import create_app, run_server
from bank_ledger.config import get_config
from bank_ledger.engine import LedgerEngine
from bank_ledger.ledger import LedgerStore
from bank_ledger.logging_config import setup_logging
from bank_ledger.storage import create_storage


def main() -> int:
    config = get_config()
    logger = setup_logging(config.log_level, config.log_format, log_file=config.log_file)

    storage = create_storage(config.database_url)
    try:
        account_store = AccountStore(storage)
        engine = LedgerEngine(account_store, LedgerStore(storage))
        app = create_app(engine, AccessGuard(account_store))
        run_server(app, host=config.api_host, port=config.api_port)
    except KeyboardInterrupt:
        logger.info("Shutting down Bank Ledger")
    except Exception:
        logger.exception("Error starting server")
        return 1
    finally:
        storage.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())
