"""devpreview -- scaffold projects on demand and serve them with live dev servers."""

__version__ = "0.1.0"
