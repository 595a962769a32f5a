"""Allow ``python -m mcp_dispatch``."""

from mcp_dispatch.cli import main

if __name__ == "__main__":
    main()
