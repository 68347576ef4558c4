"""seeing_is_believing entry point.

Supports: python -m seeing_is_believing
"""

from .app import main

if __name__ == "__main__":
    main()
