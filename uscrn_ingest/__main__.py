"""Allow ``python -m uscrn_ingest``."""
from .orchestrator import main

if __name__ == "__main__":
    main()
