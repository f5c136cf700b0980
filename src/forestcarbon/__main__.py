"""Allow ``python -m forestcarbon``."""
import multiprocessing
import sys

# taskgraph workers may be spawned while the cli module is imported.
if __name__ == '__main__':
    multiprocessing.freeze_support()

from . import cli  # noqa: E402

if __name__ == '__main__':
    sys.exit(cli.main())
