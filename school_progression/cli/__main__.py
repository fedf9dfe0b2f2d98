import sys

from school_progression.cli import main

sys.exit(main())
