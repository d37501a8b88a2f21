"""Allow ``python -m mcupnp``."""

from mcupnp.cli.main import main

if __name__ == "__main__":
    main()
