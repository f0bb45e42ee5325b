import sys

from mongo_automation.cli import main

if __name__ == "__main__":
    sys.exit(main())
