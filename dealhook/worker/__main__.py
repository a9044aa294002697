import sys

from dealhook.worker.cli import main

sys.exit(main())
