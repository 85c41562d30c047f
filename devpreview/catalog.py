"""Static catalog of project templates.

Each template is an immutable :class:`TemplateDescriptor` describing the
dependency manifest, the initial pages and components, and the feature tags
shown in discovery UIs.  Lookups never fail: an unknown id resolves to the
catalog's default template so that a stale client request still produces a
usable project.
"""

from __future__ import annotations

from typing import Any, Iterable, Optional

from pydantic import BaseModel, ConfigDict, Field

from devpreview.models import ProjectType


class TemplateDescriptor(BaseModel):
    """Immutable description of one project template."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    description: str = ""
    project_type: ProjectType = ProjectType.ASTRO
    dependencies: dict[str, str] = Field(default_factory=dict)
    dev_dependencies: dict[str, str] = Field(default_factory=dict)
    pages: tuple[str, ...] = ()
    components: tuple[str, ...] = ()
    features: tuple[str, ...] = ()

    def summary(self) -> dict[str, Any]:
        """Return the shape listed by ``GET /api/build/templates``."""
        return {
            "id": self.id,
            "name": self.name,
            "features": list(self.features),
            "pages": list(self.pages),
            "components": list(self.components),
        }

    def detail(self) -> dict[str, Any]:
        """Return every field, camelCased for the API."""
        return {
            **self.summary(),
            "description": self.description,
            "projectType": self.project_type.value,
            "dependencies": dict(self.dependencies),
            "devDependencies": dict(self.dev_dependencies),
        }


# ---------------------------------------------------------------------------
# Built-in templates
# ---------------------------------------------------------------------------

_ASTRO_TAILWIND = {
    "astro": "^5.0.0",
    "@astrojs/tailwind": "^6.0.0",
    "tailwindcss": "^4.0.0",
}
_TYPESCRIPT = {"typescript": "^5.3.0"}

BUILTIN_TEMPLATES: tuple[TemplateDescriptor, ...] = (
    TemplateDescriptor(
        id="landing-modern",
        name="Modern Landing Page",
        description="Single-page landing site with hero, features, testimonials and call to action",
        dependencies=_ASTRO_TAILWIND,
        dev_dependencies=_TYPESCRIPT,
        pages=("index.astro",),
        components=("Hero.astro", "Features.astro", "Testimonials.astro", "CTA.astro", "Footer.astro"),
        features=("Hero Section", "Feature Grid", "Testimonials", "CTA", "SEO"),
    ),
    TemplateDescriptor(
        id="portfolio-minimal",
        name="Minimal Portfolio",
        description="Portfolio with project gallery, about page and contact form",
        dependencies=_ASTRO_TAILWIND,
        dev_dependencies=_TYPESCRIPT,
        pages=("index.astro", "about.astro", "contact.astro"),
        components=("ProjectCard.astro", "Gallery.astro", "ContactForm.astro"),
        features=("Project Gallery", "About Section", "Contact Form"),
    ),
    TemplateDescriptor(
        id="blog-starter",
        name="Blog Starter",
        description="Content blog with MDX posts, tags and search",
        dependencies={**_ASTRO_TAILWIND, "@astrojs/mdx": "^4.0.0"},
        dev_dependencies=_TYPESCRIPT,
        pages=("index.astro", "blog/[...slug].astro"),
        components=("PostCard.astro", "TagList.astro", "SearchBox.astro"),
        features=("MDX Support", "Tag System", "Search", "RSS Feed"),
    ),
    TemplateDescriptor(
        id="business-pro",
        name="Business Pro",
        description="Company site with services, team and contact pages",
        dependencies=_ASTRO_TAILWIND,
        dev_dependencies=_TYPESCRIPT,
        pages=("index.astro", "about.astro", "services.astro", "contact.astro"),
        components=("Hero.astro", "Services.astro", "Team.astro", "ContactForm.astro"),
        features=("Team Section", "Services", "Testimonials", "Contact"),
    ),
    TemplateDescriptor(
        id="shop-starter",
        name="Shop Starter",
        description="Storefront with product pages, cart and checkout",
        dependencies=_ASTRO_TAILWIND,
        dev_dependencies=_TYPESCRIPT,
        pages=("index.astro", "products/[id].astro", "cart.astro"),
        components=("ProductCard.astro", "Cart.astro", "Checkout.astro"),
        features=("Product Catalog", "Cart", "Checkout"),
    ),
    TemplateDescriptor(
        id="docs-starlight",
        name="Documentation",
        description="Starlight documentation site",
        dependencies={"astro": "^5.0.0", "@astrojs/starlight": "^0.30.0"},
        dev_dependencies=_TYPESCRIPT,
        pages=(),
        components=(),
        features=("Pagefind Search", "i18n", "Dark Mode", "Sidebar Nav"),
    ),
)

DEFAULT_TEMPLATE_ID = "landing-modern"


# ---------------------------------------------------------------------------
# Catalog
# ---------------------------------------------------------------------------


class TemplateCatalog:
    """Pure lookup over a fixed set of templates."""

    def __init__(
        self,
        templates: Optional[Iterable[TemplateDescriptor]] = None,
        default_id: str = DEFAULT_TEMPLATE_ID,
    ) -> None:
        items = tuple(templates) if templates is not None else BUILTIN_TEMPLATES
        self._templates: dict[str, TemplateDescriptor] = {t.id: t for t in items}
        if default_id not in self._templates:
            raise ValueError(f"Default template '{default_id}' is not in the catalog")
        self.default_id = default_id

    @property
    def default(self) -> TemplateDescriptor:
        return self._templates[self.default_id]

    def get(self, template_id: str) -> Optional[TemplateDescriptor]:
        """Strict lookup; ``None`` for unknown ids."""
        return self._templates.get(template_id)

    def resolve(self, template_id: Optional[str]) -> TemplateDescriptor:
        """Return the template for *template_id*, or the default one."""
        if template_id and template_id in self._templates:
            return self._templates[template_id]
        return self.default

    def list_templates(self) -> list[TemplateDescriptor]:
        """All templates in catalog order."""
        return list(self._templates.values())

    def __contains__(self, template_id: object) -> bool:
        return template_id in self._templates

    def __len__(self) -> int:
        return len(self._templates)
