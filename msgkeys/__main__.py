"""Allow ``python -m msgkeys``."""

from msgkeys.main import main

if __name__ == "__main__":
    raise SystemExit(main())
