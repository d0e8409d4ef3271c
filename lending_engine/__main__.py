"""Entry point for ``python -m lending_engine``."""
from .cli import main

if __name__ == "__main__":
    main()
