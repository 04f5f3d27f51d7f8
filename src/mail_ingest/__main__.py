# =============================================================================
# mail-ingest Entry Point for `python -m mail_ingest`
# =============================================================================
# Equivalent to running the 'mail-ingest' command after installation.
# =============================================================================

import sys

from mail_ingest.app import main

if __name__ == "__main__":
    sys.exit(main())
