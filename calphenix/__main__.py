import sys

from calphenix.main import main

sys.exit(main())
