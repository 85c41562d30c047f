"""Allow ``python -m devpreview``."""

from devpreview.server import main

main()
