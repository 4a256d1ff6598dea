"""Allow running SparkChat with ``python -m sparkchat``."""

from .main import main

if __name__ == "__main__":
    main()
