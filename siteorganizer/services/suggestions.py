from __future__ import annotations

import re
from urllib.parse import urlparse

from siteorganizer.services.common import extract_domain


TAG_PATTERNS = {
    # Tech stacks
    "JavaScript": ["javascript", "node.js", "nodejs", "react", "vue", "angular", "next.js", "svelte", "npm", "nuxt", "remix", "astro", "solid", "preact", "qwik", "ember", "backbone", "meteor", "aurelia"],
    "Python": ["python", "django", "flask", "fastapi", "pandas", "numpy", "pypi", "jupyter", "anaconda", "pytest", "sqlalchemy", "celery", "scrapy", "beautifulsoup", "pillow", "matplotlib", "scikit"],
    "TypeScript": ["typescript", "deno"],
    "Java": ["java", "spring", "springboot", "maven", "gradle", "hibernate", "jakarta", "struts", "vaadin", "grails"],
    "C++": ["c++", "cpp", "cplusplus", "clang", "cmake", "boost"],
    "C#": ["csharp", "dotnet", ".net", "asp.net", "blazor", "xamarin", "unity", "maui"],
    "Go": ["golang", "gin", "echo", "fiber", "beego"],
    "Rust": ["rust", "cargo", "actix", "rocket", "warp"],
    "PHP": ["php", "laravel", "symfony", "wordpress", "composer", "codeigniter", "yii", "cakephp", "phalcon"],
    "Ruby": ["ruby", "rails", "ruby on rails", "sinatra", "hanami"],
    "Kotlin": ["kotlin", "jetbrains"],
    "Swift": ["swift", "swiftui"],
    "Dart": ["dart", "flutter"],
    "WebAssembly": ["webassembly", "wasm"],
    "Scala": ["scala", "akka", "play framework"],
    "Elixir": ["elixir", "phoenix", "ecto"],
    "Clojure": ["clojure", "clojurescript"],
    "Backend": ["backend", "rest api", "graphql", "server", "express", "nestjs", "fastify", "koa", "hapi", "microservices", "serverless"],
    "Frontend": ["frontend", "css", "html", "tailwind", "bootstrap", "sass", "scss", "styled-components", "emotion", "chakra", "mui", "antd", "shadcn"],
    "Mobile": ["mobile", "android", "ios", "react native", "flutter", "kotlin"],
    "Database": ["database", "postgresql", "mysql", "mongodb", "redis", "firebase", "supabase", "planetscale", "cockroachdb", "cassandra", "dynamodb", "elasticsearch", "sqlite"],
    # Development tools
    "Git": ["github", "gitlab", "bitbucket", "gitea", "gitpod"],
    "DevOps": ["docker", "kubernetes", "k8s", "ci/cd", "jenkins", "terraform", "ansible", "circleci", "github actions", "travis", "gitlab ci", "argo", "flux", "helm"],
    "Testing": ["testing", "jest", "vitest", "cypress", "playwright", "selenium", "mocha", "chai", "jasmine", "karma", "protractor", "storybook", "chromatic"],
    "Code": ["coding", "programming", "developer", "vscode", "vim", "emacs", "intellij", "webstorm"],
    "Open Source": ["open-source", "open source"],
    "Repository": ["repository", "github", "gitlab"],
    "Package Manager": ["npm", "yarn", "pnpm", "pip", "cargo", "maven", "gradle", "composer", "bundler"],
    "Linter": ["eslint", "prettier", "stylelint", "rubocop", "pylint", "flake8", "black"],
    "Build Tool": ["webpack", "vite", "rollup", "parcel", "esbuild", "turbopack", "gulp", "grunt", "snowpack"],
    # Features
    "Free": ["free", "open-source", "oss", "gratis"],
    "Paid": ["paid", "premium", "subscription", "pro", "enterprise"],
    "Cloud": ["cloud", "aws", "azure", "gcp", "vercel", "netlify", "heroku", "railway", "render", "fly.io", "cloudflare", "digitalocean", "linode", "vultr", "hetzner", "ovh"],
    "AI": ["ai", "machine learning", "ml", "gpt", "chatgpt", "chatbot", "openai", "anthropic", "claude", "llm", "deep learning", "neural network", "tensorflow", "pytorch", "keras", "huggingface", "stable diffusion", "midjourney"],
    "Video": ["video", "streaming", "youtube", "vimeo", "twitch", "mp4", "webm"],
    "Audio": ["audio", "music", "podcast", "spotify", "soundcloud", "mp3", "wav"],
    "Image": ["image", "photo", "picture", "gallery", "unsplash", "pexels", "jpeg", "png", "svg", "webp"],
    "CMS": ["cms", "wordpress", "contentful", "sanity", "strapi", "ghost", "drupal", "joomla", "wix", "squarespace", "webflow"],
    "Ecommerce": ["ecommerce", "e-commerce", "shopify", "woocommerce", "magento", "stripe", "paypal", "commerce", "bigcommerce", "prestashop"],
    "Realtime": ["realtime", "websocket", "socket.io", "ably", "pusher", "live", "sse"],
    "Monitoring": ["monitoring", "observability", "sentry", "datadog", "newrelic", "grafana", "prometheus", "logging"],
    "No-Code": ["no-code", "low-code", "nocode", "zapier", "make", "airtable", "bubble"],
    # Usage type
    "Tutorial": ["tutorial", "learn", "course", "guide", "how-to", "lesson", "walkthrough", "getting started"],
    "Reference": ["reference", "docs", "documentation", "api docs", "manual", "readme", "wiki", "cheatsheet"],
    "Blog": ["blog", "article", "post", "medium", "dev.to", "hashnode", "substack", "ghost", "blogger", "news"],
    "Portfolio": ["portfolio", "showcase", "works", "projects", "personal", "resume", "cv"],
    "Community": ["community", "forum", "discord", "slack", "reddit", "discussion", "chat", "support"],
    "Template": ["template", "boilerplate", "starter", "scaffold", "theme", "kit"],
    "Plugin": ["plugin", "extension", "addon", "module", "package", "library"],
    # Work related
    "Productivity": ["productivity", "workflow", "automation", "task", "management", "efficiency"],
    "Collaboration": ["collaboration", "team", "teamwork", "share", "sharing", "remote", "workspace"],
    "Fonts": ["font", "fonts", "typeface", "typography", "fontawesome", "fonts.google", "google fonts", "fontshare", "fontsquirrel", "fontsource", "fontjoy", "fontpair", "typewolf", "myfonts", "dafont", "fontspace", "webfont", "typekit", "adobe fonts", "fontspring", "lettering", "glyph"],
    "Design System": ["design system", "figma", "sketch", "storybook", "component library", "ui kit"],
    "Animation": ["animation", "motion", "framer motion", "gsap", "lottie", "anime.js", "three.js", "webgl"],
    "API": ["rest api", "graphql api", "webhook", "endpoint", "postman", "insomnia", "swagger", "openapi"],
    "Security": ["security", "authentication", "authorization", "oauth", "jwt", "auth0", "clerk", "encryption", "cybersecurity", "pentesting", "vulnerability"],
    "Performance": ["performance", "optimization", "lighthouse", "core web vitals", "caching"],
    "Accessibility": ["accessibility", "a11y", "wcag", "aria", "screen reader"],
    "Internationalization": ["i18n", "internationalization", "localization", "l10n", "translation", "multilingual"],
    "Deployment": ["deployment", "hosting", "deploy", "production", "staging", "preview"],
}

DOMAIN_PATTERNS = {
    "work": ["slack", "notion", "asana", "trello", "monday", "jira", "confluence", "teams", "zoom", "meet", "calendar", "docs", "sheets", "drive"],
    "development": ["github", "gitlab", "bitbucket", "stackoverflow", "stackexchange", "npmjs", "pypi", "docker", "kubernetes", "aws", "azure", "vercel", "netlify", "heroku", "digitalocean", "codepen", "codesandbox", "replit"],
    "education": ["udemy", "coursera", "edx", "khanacademy", "skillshare", "pluralsight", "linkedin learning", "masterclass", "brilliant", "duolingo", "memrise", "quizlet", "codecademy", "freecodecamp"],
    "social": ["twitter", "facebook", "instagram", "linkedin", "reddit", "pinterest", "tiktok", "snapchat", "discord", "telegram", "whatsapp", "mastodon"],
    "entertainment": ["youtube", "netflix", "spotify", "twitch", "hulu", "disney", "hbo", "amazon prime", "soundcloud", "bandcamp", "vimeo", "dailymotion"],
    "shopping": ["amazon", "ebay", "etsy", "shopify", "aliexpress", "walmart", "target", "bestbuy", "newegg", "zalando", "asos"],
    "news": ["medium", "substack", "news", "bbc", "cnn", "reuters", "techcrunch", "theverge", "wired", "ars technica", "hackernews"],
    "finance": ["paypal", "stripe", "bank", "investing", "robinhood", "coinbase", "binance", "revolut", "wise", "mint", "personal capital"],
    "design": ["figma", "sketch", "adobe", "canva", "dribbble", "behance", "unsplash", "pexels", "flaticon", "fontawesome", "google fonts"],
    "documentation": ["docs", "wiki", "documentation", "readme", "guide", "manual", "reference"],
    "tools": ["google", "translate", "calendar", "maps", "analytics", "search", "mail", "gmail", "outlook", "proton"],
}

TITLE_KEYWORDS = {
    "work": ["work", "job", "office", "professional", "business", "corporate", "enterprise"],
    "development": ["code", "programming", "developer", "api", "framework", "library", "tutorial", "documentation", "repo", "git"],
    "education": ["learn", "course", "tutorial", "education", "training", "study", "lesson", "class", "school", "university"],
    "social": ["social", "community", "forum", "chat", "messaging", "network"],
    "entertainment": ["video", "music", "stream", "watch", "listen", "play", "game", "gaming"],
    "shopping": ["shop", "buy", "store", "market", "cart", "product", "deal", "sale"],
    "news": ["news", "article", "blog", "post", "read", "story", "magazine"],
    "finance": ["finance", "money", "payment", "crypto", "invest", "trading", "stock"],
    "design": ["design", "creative", "art", "graphic", "ui", "ux", "icon", "font"],
    "tools": ["tool", "utility", "converter", "generator", "calculator", "helper"],
}

_SEGMENT_SPLIT = re.compile(r"[\s/\-_.,:;?&=#+()|\[\]{}]+")


def matches_pattern(text: str, pattern: str) -> bool:
    """Substring match for dotted or multi-word patterns, whole-segment match otherwise."""
    if "." in pattern or " " in pattern:
        return pattern in text
    return pattern in _SEGMENT_SPLIT.split(text)


def _entity_patterns(name: str) -> list[str]:
    words = [word for word in name.split() if len(word) > 2]
    return [name, *words] if len(name.split()) > 1 else [name]


def reverse_match(suggestions: dict, entities: list[dict], *texts: str) -> None:
    """Add the lowercased name of every entity whose name shows up in one of ``texts``."""
    for entity in entities:
        raw = ((entity or {}).get("name") or "").strip()
        if len(raw) <= 2:
            continue
        name = raw.lower()
        if any(
            matches_pattern(text, pattern)
            for pattern in _entity_patterns(name)
            for text in texts
        ):
            suggestions.setdefault(name, None)


def match_to_existing(names: list[str], entities: list[dict]) -> list:
    by_name = {}
    for entity in entities:
        key = ((entity or {}).get("name") or "").lower()
        if key and key not in by_name:
            by_name[key] = entity
    return [by_name[name.lower()]["id"] for name in names if name.lower() in by_name]


def suggest_tags(url: str, name: str = "", existing: list[dict] | None = None) -> dict:
    if not url:
        return {"tagIds": [], "suggestions": []}
    existing = existing or []
    lower_url = url.lower()
    lower_name = (name or "").lower()
    domain = extract_domain(lower_url)

    suggestions: dict[str, None] = {}
    for tag, patterns in TAG_PATTERNS.items():
        if any(
            matches_pattern(domain, pattern)
            or matches_pattern(lower_url, pattern)
            or matches_pattern(lower_name, pattern)
            for pattern in patterns
        ):
            suggestions[tag] = None

    if existing:
        reverse_match(suggestions, existing, domain, lower_url, lower_name)

    names = list(suggestions)
    return {"tagIds": match_to_existing(names, existing), "suggestions": names}


def _category_names(url: str, name: str) -> list[str]:
    lower_url = url.lower()
    lower_name = (name or "").lower()
    host = urlparse(url).hostname
    domain = host.replace("www.", "", 1) if host else lower_url

    found: dict[str, None] = {}
    for category, patterns in DOMAIN_PATTERNS.items():
        if any(pattern in domain or pattern in lower_url for pattern in patterns):
            found[category] = None
    if lower_name:
        for category, keywords in TITLE_KEYWORDS.items():
            if any(keyword in lower_name for keyword in keywords):
                found[category] = None
    return list(found)


def suggest_categories(url: str, name: str = "", existing: list[dict] | None = None) -> dict:
    if not url:
        return {"categoryIds": [], "suggestions": []}
    names = _category_names(url, name)
    return {"categoryIds": match_to_existing(names, existing or []), "suggestions": names}


def category_name_suggestions(url: str, name: str = "") -> list[str]:
    if not url:
        return []
    return [category.capitalize() for category in _category_names(url, name)]


def extract_path_text(url: str) -> str:
    value = url if url.startswith("http") else f"https://{url}"
    try:
        parsed = urlparse(value)
    except ValueError:
        return ""
    query = f"?{parsed.query}" if parsed.query else ""
    return f"{parsed.path or ''} {query}".lower()


def _match_names(text: str, entities: list[dict]) -> list[str]:
    lowered = (text or "").lower()
    if not lowered:
        return []
    matches: dict[str, None] = {}
    for entity in entities:
        raw = ((entity or {}).get("name") or "").strip()
        if len(raw) <= 2:
            continue
        if any(matches_pattern(lowered, p) for p in _entity_patterns(raw.lower())):
            matches[raw] = None
    return list(matches)


def local_match(sites: list[dict], categories: list[dict], tags: list[dict]) -> list[dict]:
    """Pattern-match category names against each site's domain and tag names against its path."""
    results = []
    for site in sites:
        url = site.get("url") or ""
        category_names = _match_names(extract_domain(url).lower(), categories)
        tag_names = _match_names(extract_path_text(url), tags)
        category_ids = match_to_existing(category_names, categories)
        tag_ids = match_to_existing(tag_names, tags)
        if not category_ids and not tag_ids:
            continue
        results.append(
            {
                "siteId": site.get("id"),
                "siteName": site.get("name") or "",
                "siteUrl": url,
                "categoryIds": category_ids,
                "categoryNames": category_names,
                "tagIds": tag_ids,
                "tagNames": tag_names,
                "categorySource": "domain",
                "tagSource": "path",
                "source": "pattern",
            }
        )
    return results
