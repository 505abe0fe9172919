"""Allow ``python -m pdfscribe_acp``."""

from .cli import main

if __name__ == "__main__":
    main()
