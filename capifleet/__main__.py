"""
CLI entry point, when used as a module: `python -m capifleet`.
"""
from capifleet import cli

if __name__ == '__main__':
    cli.main()
