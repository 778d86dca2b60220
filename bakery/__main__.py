"""Run the bakery command line tool with `python -m bakery`."""

from bakery.tool.bakery import main

if __name__ == "__main__":
    main()
