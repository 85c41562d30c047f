"""devpreview scaffolder -- writes the initial file set of a project.

Quick usage::

    from devpreview.catalog import TemplateCatalog
    from devpreview.scaffolder import Scaffolder

    template = TemplateCatalog().resolve("landing-modern")
    await Scaffolder().scaffold(template, "/tmp/test-shop", "Test Shop")
"""

from devpreview.scaffolder.generator import MANIFEST_NAME, ScaffoldError, Scaffolder, build_manifest
from devpreview.scaffolder.templates import TemplateRenderer

__all__ = [
    "MANIFEST_NAME",
    "ScaffoldError",
    "Scaffolder",
    "TemplateRenderer",
    "build_manifest",
]
