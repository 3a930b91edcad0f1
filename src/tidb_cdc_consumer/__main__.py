"""Allow running the consumer with ``python -m tidb_cdc_consumer``."""

from .service import main

if __name__ == "__main__":
    main()
