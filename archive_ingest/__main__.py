import sys

from archive_ingest.cli import main

sys.exit(main())
