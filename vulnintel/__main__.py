import sys

from vulnintel.cli import main

sys.exit(main())
