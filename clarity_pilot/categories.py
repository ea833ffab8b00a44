"""Free-text query to browse-category resolution.

The marketplace has no keyword search; experts are listed under a fixed
taxonomy at ``/browse/{category}/{subcategory}``. ``resolve`` maps a
query onto that taxonomy:

1. exact (case-insensitive, trimmed) key match
2. otherwise the longest key contained in the query
3. otherwise the unfiltered ``/browse`` listing

It is pure and total: every string resolves to some URL.
"""

CATEGORY_MAP: dict[str, str] = {
    # Business
    "business": "business",
    "strategy": "business/strategy",
    "business strategy": "business/strategy",
    "branding": "business/branding",
    "career": "business/career-advice",
    "financial": "business/financial-consulting",
    "hr": "business/human-resources",
    "human resources": "business/human-resources",
    "legal": "business/legal",
    "business development": "business/business-development",
    # Sales & marketing
    "marketing": "sales-marketing",
    "marketing strategy": "sales-marketing",
    "digital marketing": "sales-marketing",
    "social media": "sales-marketing/social-media-marketing",
    "social media marketing": "sales-marketing/social-media-marketing",
    "seo": "sales-marketing/search-engine-optimization",
    "pr": "sales-marketing/public-relations",
    "public relations": "sales-marketing/public-relations",
    "email marketing": "sales-marketing/email-marketing",
    "inbound marketing": "sales-marketing/inbound-marketing",
    "growth": "sales-marketing/growth-strategy",
    "growth strategy": "sales-marketing/growth-strategy",
    "advertising": "sales-marketing/advertising",
    "copywriting": "marketing-advertising/copywriting",
    "sales": "sales-marketing/sales-lead-generation",
    # Funding
    "funding": "funding",
    "finance": "funding/finance",
    "crowdfunding": "raising-capital/crowdfunding",
    "kickstarter": "raising-capital/kickstarter",
    "venture capital": "raising-capital/venture-capital",
    "vc": "raising-capital/venture-capital",
    # Product & design
    "product": "product-design",
    "design": "product-design",
    "product design": "product-design",
    "ux": "product-design/user-experience",
    "user experience": "product-design/user-experience",
    "lean startup": "product-design/lean-startup",
    "product management": "product-design/product-management",
    "analytics": "product-design/metrics-analytics",
    # Technology
    "technology": "technology",
    "tech": "technology",
    "software": "technology/software-development",
    "mobile": "technology/mobile",
    "wordpress": "technology/wordpress",
    "crm": "technology/crm",
    # Industries
    "ecommerce": "industries/e-commerce",
    "e-commerce": "industries/e-commerce",
    "saas": "industries/saas",
    "education": "industries/education",
    "real estate": "industries/real-estate",
    "marketplace": "industries/marketplaces",
    "marketplaces": "industries/marketplaces",
    "nonprofit": "industries/nonprofit",
    # Skills & management
    "entrepreneurship": "skills-management/entrepreneurship",
    "leadership": "skills-management/leadership",
    "coaching": "skills-management/coaching",
    "productivity": "skills-management/productivity",
    "public speaking": "skills-management/public-speaking",
}


def resolve_path(query: str) -> str | None:
    """Return the category path for ``query``, or None when nothing matches."""
    normalized = query.lower().strip()

    if normalized in CATEGORY_MAP:
        return CATEGORY_MAP[normalized]

    best_key = ""
    for key in CATEGORY_MAP:
        if key in normalized and len(key) > len(best_key):
            best_key = key

    return CATEGORY_MAP[best_key] if best_key else None


def resolve(query: str, base_url: str = "https://clarity.fm") -> str:
    """Map a free-text query to a browse URL (see module docstring)."""
    base = base_url.rstrip("/")
    path = resolve_path(query)
    if path is None:
        return f"{base}/browse"
    return f"{base}/browse/{path}"
