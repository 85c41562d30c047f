"""Project scaffolding.

Takes a :class:`~devpreview.catalog.TemplateDescriptor` and writes the
initial file set of an Astro project: directory skeleton, config files,
layout, one placeholder per page and component, and finally the
``package.json`` manifest.

The manifest is written last and doubles as the completion marker: a
directory without it is a scaffold that never finished and is safe to
scaffold again.
"""

from __future__ import annotations

import asyncio
import json
from pathlib import Path, PurePosixPath
from typing import Any

from jinja2 import TemplateError
from rich.markup import escape

from devpreview.catalog import TemplateDescriptor
from devpreview.utils import console, slugify
from devpreview.scaffolder.templates import TemplateRenderer


MANIFEST_NAME = "package.json"

SKELETON_DIRS: tuple[str, ...] = (
    "src/pages",
    "src/components",
    "src/layouts",
    "src/styles",
    "public",
)

# Astro integrations keyed by the dependency that enables them.
_INTEGRATIONS: dict[str, tuple[str, str]] = {
    "@astrojs/tailwind": ("tailwind", "tailwind()"),
    "@astrojs/mdx": ("mdx", "mdx()"),
    "@astrojs/starlight": ("starlight", "starlight({{ title: {title} }})"),
}


class ScaffoldError(Exception):
    """Raised when writing the project tree fails."""

    def __init__(self, message: str, path: str | Path = "") -> None:
        self.path = str(path)
        super().__init__(message)


class Scaffolder:
    """Writes a template's initial file set into a target directory."""

    def __init__(self, renderer: TemplateRenderer | None = None) -> None:
        self.renderer = renderer or TemplateRenderer()

    # -- Public API --------------------------------------------------------

    @staticmethod
    def manifest_path(target_path: str | Path) -> Path:
        return Path(target_path) / MANIFEST_NAME

    @classmethod
    def is_complete(cls, target_path: str | Path) -> bool:
        """Return ``True`` if a previous scaffold of *target_path* finished."""
        return cls.manifest_path(target_path).is_file()

    async def scaffold(
        self,
        template: TemplateDescriptor,
        target_path: str | Path,
        project_name: str,
    ) -> list[Path]:
        """Generate the project tree.

        Args:
            template: Template to materialise.
            target_path: Project root; created if missing.
            project_name: Human-readable name used for titles; its slug is
                the npm package name.

        Returns:
            Every file written, manifest last.

        Raises:
            ScaffoldError: On any filesystem or rendering failure.  Files
                written before the failure are left in place.
        """
        root = Path(target_path)
        context = self._build_context(template, project_name)

        try:
            await self._create_directory_structure(root)
            written = await self.renderer.render_tree("astro", root, context)
            if "@astrojs/starlight" in template.dependencies:
                written += await self.renderer.render_tree("starlight", root, context)
            written += await self._render_pages(root, template, context)
            written += await self._render_components(root, template, context)
            written.append(await self._write_manifest(root, template, project_name))
        except (OSError, TemplateError) as exc:
            raise ScaffoldError(f"Failed to scaffold {root}: {exc}", root) from exc

        console.print(
            f"[dim]Scaffolded {len(written)} files for '{template.id}' in {escape(str(root))}[/dim]"
        )
        return written

    # -- Steps -------------------------------------------------------------

    async def _create_directory_structure(self, root: Path) -> None:
        def _mkdirs() -> None:
            root.mkdir(parents=True, exist_ok=True)
            for rel in SKELETON_DIRS:
                (root / rel).mkdir(parents=True, exist_ok=True)

        await asyncio.to_thread(_mkdirs)

    async def _render_pages(
        self, root: Path, template: TemplateDescriptor, context: dict[str, Any]
    ) -> list[Path]:
        written: list[Path] = []
        for page in template.pages:
            rel = PurePosixPath(page)
            page_context = {
                **context,
                "layout_import": _layout_import(len(rel.parts) - 1),
                "page_title": _page_title(rel),
                "dynamic": "[" in page,
            }
            fragment = "fragments/index.astro.j2" if page == "index.astro" else "fragments/page.astro.j2"
            out = root / "src" / "pages" / Path(*rel.parts)
            written.append(await self.renderer.render_to_file(fragment, out, page_context))
        return written

    async def _render_components(
        self, root: Path, template: TemplateDescriptor, context: dict[str, Any]
    ) -> list[Path]:
        written: list[Path] = []
        for component in template.components:
            name = PurePosixPath(component).stem
            out = root / "src" / "components" / component
            written.append(
                await self.renderer.render_to_file(
                    "fragments/component.astro.j2",
                    out,
                    {**context, "component_name": name},
                )
            )
        return written

    async def _write_manifest(
        self, root: Path, template: TemplateDescriptor, project_name: str
    ) -> Path:
        manifest = build_manifest(template, project_name)
        path = self.manifest_path(root)
        content = json.dumps(manifest, indent=2) + "\n"
        await asyncio.to_thread(path.write_text, content, "utf-8")
        return path

    # -- Context -----------------------------------------------------------

    @staticmethod
    def _build_context(template: TemplateDescriptor, project_name: str) -> dict[str, Any]:
        title = project_name.strip()
        integrations = []
        for dependency, (name, call) in _INTEGRATIONS.items():
            if dependency in template.dependencies:
                integrations.append(
                    {
                        "name": name,
                        "module": dependency,
                        "call": call.format(title=json.dumps(title)),
                    }
                )
        return {
            "title": title,
            "package_name": slugify(project_name) or "project",
            "template": template,
            "features": list(template.features),
            "integrations": integrations,
            "tailwind": "tailwindcss" in template.dependencies,
            "layout_import": _layout_import(0),
        }


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def build_manifest(template: TemplateDescriptor, project_name: str) -> dict[str, Any]:
    """Return the ``package.json`` content for *template*."""
    return {
        "name": slugify(project_name) or "project",
        "type": "module",
        "version": "0.0.1",
        "private": True,
        "scripts": {
            "dev": "astro dev",
            "start": "astro dev",
            "build": "astro build",
            "preview": "astro preview",
        },
        "dependencies": dict(template.dependencies),
        "devDependencies": dict(template.dev_dependencies),
    }


def _layout_import(depth: int) -> str:
    """Relative import of the layout from a page *depth* folders below ``src/pages``."""
    return "../" * (depth + 1) + "layouts/Layout.astro"


def _page_title(rel: PurePosixPath) -> str:
    stem = rel.stem.strip("[].")
    if rel.stem.startswith("["):
        stem = rel.parent.name or stem
    return stem.replace("-", " ").title() or "Home"
