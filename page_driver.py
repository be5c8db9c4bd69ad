"""
Page Gobbler - Page Driver
Page-level operations used by the capture orchestrator.

PageDriver runs inside the target page (measure, scroll, overlay handling,
metadata) and SnapshotSource owns the visible-region snapshot primitive.
The Playwright implementations drive a Chromium page through JavaScript.
"""

import logging
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from typing import Optional

from playwright.async_api import async_playwright

from capture_models import PageMetrics, PageMetadata, SnapshotFormat
from utils.error_handler import ErrorContext, MeasurementError

logger = logging.getLogger(__name__)

MAX_VISIBLE_TEXT_CHARS = 50000
MAX_LINKS = 200
MAX_CONSOLE_ENTRIES = 200

# Caps for the page artifacts bundled next to the sections
ARTIFACT_LIMITS = {
    "images": 100,
    "backgroundImages": 30,
    "forms": 20,
    "domChars": 30000,
    "stylesheetChars": 50000,
}


class PageDriver(ABC):
    """Operations executed in the target page context"""

    @abstractmethod
    async def prepare(self):
        """Save scroll position and styles, switch to instant scrolling"""

    @abstractmethod
    async def measure(self) -> PageMetrics:
        """Measure the full page; raises MeasurementError"""

    @abstractmethod
    async def scroll_to(self, y: int) -> int:
        """Scroll to y and return the scroll position actually reached"""

    @abstractmethod
    async def wait_for_frame(self):
        """Resolve after the next rendering frame"""

    @abstractmethod
    async def detect_overlays(self) -> int:
        """Find fixed/sticky elements; returns how many were found"""

    @abstractmethod
    async def hide_overlays(self):
        """Hide the elements found by detect_overlays()"""

    @abstractmethod
    async def collect_metadata(self) -> PageMetadata:
        """Collect title, URL, headings, links, visible text and the page artifacts"""

    @abstractmethod
    async def restore(self):
        """Undo every page mutation; must be safe to call at any point"""


class SnapshotSource(ABC):
    """The rate-limited visible-region snapshot primitive"""

    @abstractmethod
    async def capture_visible_region(self, fmt: SnapshotFormat, quality: float) -> bytes:
        """Return the encoded bitmap of the visible viewport"""


# === JavaScript executed in the page ===

_PREPARE_JS = """
() => {
  const root = document.documentElement;
  if (!window.__gobbleState) {
    window.__gobbleState = {
      scrollX: window.scrollX,
      scrollY: window.scrollY,
      scrollBehavior: root.style.scrollBehavior,
      rootOverflow: root.style.overflow,
      bodyOverflow: document.body ? document.body.style.overflow : '',
    };
  }
  root.style.scrollBehavior = 'auto';
  root.style.overflow = 'hidden';
  if (document.body) document.body.style.overflow = 'visible';
}
"""

_MEASURE_JS = """
() => {
  const body = document.body;
  const root = document.documentElement;
  return {
    pageHeight: Math.max(
      body ? body.scrollHeight : 0,
      body ? body.offsetHeight : 0,
      root.scrollHeight,
      root.offsetHeight,
      root.clientHeight
    ),
    viewportHeight: window.innerHeight,
    viewportWidth: window.innerWidth,
    devicePixelRatio: window.devicePixelRatio || 1,
  };
}
"""

_SCROLL_JS = """
(y) => {
  window.scrollTo(0, y);
  return Math.round(window.scrollY);
}
"""

_FRAME_JS = "() => new Promise((resolve) => requestAnimationFrame(() => resolve()))"

_DETECT_OVERLAYS_JS = """
() => {
  let count = 0;
  document.querySelectorAll('*').forEach((el) => {
    const position = getComputedStyle(el).position;
    if (position === 'fixed' || position === 'sticky') {
      el.setAttribute('data-gobble-overlay', el.style.visibility || '');
      count++;
    }
  });
  return count;
}
"""

_HIDE_OVERLAYS_JS = """
() => {
  document.querySelectorAll('[data-gobble-overlay]').forEach((el) => {
    el.style.visibility = 'hidden';
  });
}
"""

_RESTORE_JS = """
() => {
  document.querySelectorAll('[data-gobble-overlay]').forEach((el) => {
    el.style.visibility = el.getAttribute('data-gobble-overlay');
    el.removeAttribute('data-gobble-overlay');
  });
  const state = window.__gobbleState;
  if (state) {
    const root = document.documentElement;
    root.style.scrollBehavior = state.scrollBehavior;
    root.style.overflow = state.rootOverflow;
    if (document.body) document.body.style.overflow = state.bodyOverflow;
    window.scrollTo(state.scrollX, state.scrollY);
    delete window.__gobbleState;
  }
}
"""

_METADATA_JS = """
(maxLinks) => {
  const headings = [];
  document.querySelectorAll('h1, h2, h3').forEach((h) => {
    headings.push({
      level: parseInt(h.tagName[1]),
      text: h.textContent.trim().slice(0, 200),
      offset_top: h.offsetTop,
    });
  });

  const metaTags = {};
  document.querySelectorAll('meta[name], meta[property]').forEach((m) => {
    const key = m.getAttribute('name') || m.getAttribute('property');
    const val = m.getAttribute('content');
    if (key && val) metaTags[key] = val.slice(0, 500);
  });

  const links = [];
  document.querySelectorAll('a[href]').forEach((a) => {
    const href = a.href;
    const text = a.textContent.trim().slice(0, 100);
    if (href && text && !href.startsWith('javascript:')) links.push({ href, text });
  });

  const chunks = [];
  if (document.body) {
    const walker = document.createTreeWalker(document.body, NodeFilter.SHOW_TEXT, {
      acceptNode(node) {
        const parent = node.parentElement;
        if (!parent) return NodeFilter.FILTER_REJECT;
        const tag = parent.tagName.toLowerCase();
        if (['script', 'style', 'noscript', 'svg', 'path'].includes(tag)) {
          return NodeFilter.FILTER_REJECT;
        }
        const style = getComputedStyle(parent);
        if (style.display === 'none' || style.visibility === 'hidden' || style.opacity === '0') {
          return NodeFilter.FILTER_REJECT;
        }
        return node.textContent.trim().length > 0 ? NodeFilter.FILTER_ACCEPT : NodeFilter.FILTER_REJECT;
      },
    });
    while (walker.nextNode()) chunks.push(walker.currentNode.textContent.trim());
  }

  return {
    url: window.location.href,
    title: document.title,
    language: document.documentElement.lang || 'unknown',
    headings,
    meta_tags: metaTags,
    links: links.slice(0, maxLinks),
    link_count: links.length,
    visible_text: chunks.join('\\n'),
    viewport_width_px: window.innerWidth,
  };
}
"""

_CONSOLE_CAPTURE_JS = """
(() => {
  if (window.__gobbleConsole) return;
  const entries = [];
  window.__gobbleConsole = entries;
  ['log', 'warn', 'error', 'info', 'debug'].forEach((method) => {
    const original = console[method].bind(console);
    console[method] = (...args) => {
      if (entries.length < %(max_entries)d) {
        entries.push({
          level: method,
          timestamp: new Date().toISOString(),
          message: args.map((a) => {
            try {
              return typeof a === 'object' ? JSON.stringify(a, null, 2) : String(a);
            } catch (_) {
              return String(a);
            }
          }).join(' '),
        });
      }
      original(...args);
    };
  });
})();
""" % {"max_entries": MAX_CONSOLE_ENTRIES}

_ARTIFACTS_JS = """
(limits) => {
  const SEMANTIC_TAGS = new Set([
    'html', 'head', 'body', 'header', 'nav', 'main', 'section', 'article',
    'aside', 'footer', 'h1', 'h2', 'h3', 'h4', 'h5', 'h6', 'form',
    'table', 'ul', 'ol', 'dl', 'figure', 'details', 'dialog',
  ]);

  function walk(el, depth) {
    if (depth > 6) return '';
    const tag = el.tagName.toLowerCase();
    let children = '';
    if (!SEMANTIC_TAGS.has(tag)) {
      for (const child of el.children) children += walk(child, depth);
      return children;
    }
    const indent = '  '.repeat(depth);
    const attrs = [];
    if (el.id) attrs.push(`id="${el.id}"`);
    if (typeof el.className === 'string' && el.className.trim()) {
      attrs.push(`class="${el.className.trim().slice(0, 80)}"`);
    }
    if (el.getAttribute('role')) attrs.push(`role="${el.getAttribute('role')}"`);
    if (el.getAttribute('aria-label')) {
      attrs.push(`aria-label="${el.getAttribute('aria-label').slice(0, 60)}"`);
    }
    const attrStr = attrs.length ? ' ' + attrs.join(' ') : '';
    for (const child of el.children) children += walk(child, depth + 1);
    if (children) return `${indent}<${tag}${attrStr}>\\n${children}${indent}</${tag}>\\n`;
    const text = el.textContent.trim().slice(0, 60);
    return text ? `${indent}<${tag}${attrStr}>${text}</${tag}>\\n` : `${indent}<${tag}${attrStr} />\\n`;
  }

  const images = [];
  document.querySelectorAll('img').forEach((img) => {
    images.push({
      src: img.src || img.dataset.src || '',
      alt: img.alt || '',
      width: img.naturalWidth || img.width || 0,
      height: img.naturalHeight || img.height || 0,
      loading: img.loading || 'eager',
    });
  });
  const backgroundImages = [];
  document.querySelectorAll('[style*="background"], section, div, header, footer').forEach((el) => {
    const bg = getComputedStyle(el).backgroundImage;
    if (bg && bg.startsWith('url(')) {
      const src = bg.slice(4, -1).replace(/["']/g, '');
      if (!src.startsWith('data:')) {
        backgroundImages.push({
          src,
          element: el.tagName.toLowerCase(),
          class_name: (el.className || '').toString().slice(0, 60),
        });
      }
    }
  });

  const structuredData = [];
  document.querySelectorAll('script[type="application/ld+json"]').forEach((script) => {
    try {
      structuredData.push({ type: 'json-ld', data: JSON.parse(script.textContent) });
    } catch (_) { /* malformed JSON-LD */ }
  });
  const grouped = (selector, attr) => {
    const out = {};
    document.querySelectorAll(selector).forEach((m) => { out[m.getAttribute(attr)] = m.getAttribute('content'); });
    return out;
  };
  const og = grouped('meta[property^="og:"]', 'property');
  if (Object.keys(og).length) structuredData.push({ type: 'open-graph', data: og });
  const twitter = grouped('meta[name^="twitter:"]', 'name');
  if (Object.keys(twitter).length) structuredData.push({ type: 'twitter-card', data: twitter });

  const colorCounts = new Map();
  const fontCounts = new Map();
  document.querySelectorAll(
    'body, header, nav, main, footer, h1, h2, h3, p, a, button, .btn, [class*="hero"], [class*="cta"]'
  ).forEach((el) => {
    const style = getComputedStyle(el);
    [style.color, style.backgroundColor].forEach((c) => {
      if (c && c !== 'rgba(0, 0, 0, 0)') colorCounts.set(c, (colorCounts.get(c) || 0) + 1);
    });
    const key = `${style.fontFamily}|${style.fontSize}|${style.fontWeight}`;
    fontCounts.set(key, (fontCounts.get(key) || 0) + 1);
  });
  const byCount = (m) => [...m.entries()].sort((a, b) => b[1] - a[1]);
  const customProperties = {};
  const stylesheets = [];
  document.querySelectorAll('style').forEach((style, index) => {
    const css = style.textContent.trim();
    if (css) stylesheets.push({ type: 'inline', index, css: css.slice(0, limits.stylesheetChars) });
  });
  for (const sheet of document.styleSheets) {
    let rules = null;
    try { rules = [...sheet.cssRules]; } catch (_) { /* cross-origin stylesheet */ }
    if (rules) {
      rules.forEach((rule) => {
        if (rule.selectorText === ':root' || rule.selectorText === ':root, :host') {
          for (const prop of rule.style) {
            if (prop.startsWith('--')) customProperties[prop] = rule.style.getPropertyValue(prop).trim();
          }
        }
      });
    }
    if (!sheet.href) continue;
    stylesheets.push(rules
      ? { type: 'external', href: sheet.href, css: rules.map((r) => r.cssText).join('\\n').slice(0, limits.stylesheetChars) }
      : { type: 'external', href: sheet.href, css: null, cross_origin: true });
  }

  const resources = { scripts: [], stylesheets: [], fonts: [], preloads: [] };
  document.querySelectorAll('script[src]').forEach((s) => {
    resources.scripts.push({ src: s.src, async: s.async, defer: s.defer, type: s.type || 'text/javascript' });
  });
  document.querySelectorAll('link[rel="stylesheet"]').forEach((l) => {
    resources.stylesheets.push({ href: l.href, media: l.media || 'all' });
  });
  document.querySelectorAll('link[rel="preconnect"], link[rel="preload"], link[rel="dns-prefetch"]').forEach((l) => {
    resources.preloads.push({ rel: l.rel, href: l.href, as: l.getAttribute('as') || '' });
  });
  if (document.fonts) {
    document.fonts.forEach((f) => {
      resources.fonts.push({ family: f.family, style: f.style, weight: f.weight, status: f.status });
    });
  }

  const forms = [];
  document.querySelectorAll('form').forEach((form) => {
    const fields = [];
    form.querySelectorAll('input, select, textarea, button').forEach((el) => {
      const field = {
        tag: el.tagName.toLowerCase(),
        type: el.type || '',
        name: el.name || '',
        id: el.id || '',
        placeholder: el.placeholder || '',
        required: el.required || false,
      };
      if (el.tagName === 'SELECT') {
        field.options = [...el.options].slice(0, 20).map((o) => ({ value: o.value, text: o.text }));
      }
      fields.push(field);
    });
    forms.push({
      action: form.action || '',
      method: form.method || 'get',
      id: form.id || '',
      name: form.getAttribute('name') || '',
      fields,
    });
  });

  return {
    dom_structure: walk(document.documentElement, 0).slice(0, limits.domChars),
    image_assets: {
      images: images.slice(0, limits.images),
      background_images: backgroundImages.slice(0, limits.backgroundImages),
    },
    structured_data: structuredData,
    design_tokens: {
      colors: byCount(colorCounts).slice(0, 15).map(([color, count]) => ({ color, count })),
      fonts: byCount(fontCounts).slice(0, 10).map(([key, count]) => {
        const [family, size, weight] = key.split('|');
        return { family, size, weight, count };
      }),
      custom_properties: customProperties,
    },
    stylesheets,
    external_resources: resources,
    forms: forms.slice(0, limits.forms),
    console_logs: [...(window.__gobbleConsole || [])],
  };
}
"""


class PlaywrightPageDriver(PageDriver):
    """PageDriver backed by a Playwright async Page"""

    def __init__(self, page):
        self.page = page
        self._overlay_count = 0

    async def prepare(self):
        await self.page.evaluate(_PREPARE_JS)
        logger.debug("[PlaywrightPageDriver] Page prepared for capture")

    async def measure(self) -> PageMetrics:
        with ErrorContext("measuring page dimensions", raise_as=MeasurementError):
            raw = await self.page.evaluate(_MEASURE_JS)

        page_height = int(raw.get("pageHeight") or 0)
        viewport_height = int(raw.get("viewportHeight") or 0)
        if page_height <= 0 or viewport_height <= 0:
            raise MeasurementError(
                f"Cannot determine page dimensions (height={page_height}, viewport={viewport_height})",
                metrics=raw,
            )

        metrics = PageMetrics(
            total_height_px=page_height,
            viewport_height_px=viewport_height,
            device_pixel_ratio=float(raw.get("devicePixelRatio") or 1),
            viewport_width_px=raw.get("viewportWidth"),
        )
        logger.info(
            f"[PlaywrightPageDriver] Page {metrics.viewport_width_px}x{page_height}px, "
            f"viewport {viewport_height}px, dpr {metrics.device_pixel_ratio}"
        )
        return metrics

    async def scroll_to(self, y: int) -> int:
        actual = await self.page.evaluate(_SCROLL_JS, y)
        return int(actual)

    async def wait_for_frame(self):
        await self.page.evaluate(_FRAME_JS)

    async def detect_overlays(self) -> int:
        self._overlay_count = int(await self.page.evaluate(_DETECT_OVERLAYS_JS))
        logger.debug(f"[PlaywrightPageDriver] Found {self._overlay_count} fixed/sticky elements")
        return self._overlay_count

    async def hide_overlays(self):
        if self._overlay_count:
            await self.page.evaluate(_HIDE_OVERLAYS_JS)

    async def collect_metadata(self) -> PageMetadata:
        raw = await self.page.evaluate(_METADATA_JS, MAX_LINKS)
        raw["visible_text"] = (raw.get("visible_text") or "")[:MAX_VISIBLE_TEXT_CHARS]

        # Artifacts are optional; core metadata is kept when they fail
        try:
            raw.update(await self.page.evaluate(_ARTIFACTS_JS, ARTIFACT_LIMITS))
        except Exception as e:
            logger.warning(f"[PlaywrightPageDriver] Could not collect page artifacts: {e}")

        metadata = PageMetadata(**raw)
        logger.debug(
            f"[PlaywrightPageDriver] Metadata: {metadata.link_count} links, {len(metadata.forms)} forms, "
            f"{len(metadata.image_assets.images)} images, {len(metadata.console_logs)} console entries"
        )
        return metadata

    async def restore(self):
        await self.page.evaluate(_RESTORE_JS)
        self._overlay_count = 0
        logger.debug("[PlaywrightPageDriver] Page state restored")


class PlaywrightSnapshotSource(SnapshotSource):
    """Visible-viewport screenshots through Playwright"""

    def __init__(self, page):
        self.page = page

    async def capture_visible_region(self, fmt: SnapshotFormat, quality: float) -> bytes:
        # WebP is not a screenshot type; capture lossless and let the
        # compressor produce WebP later
        if SnapshotFormat(fmt) == SnapshotFormat.JPEG:
            return await self.page.screenshot(type="jpeg", quality=int(round(quality * 100)))
        return await self.page.screenshot(type="png")


@asynccontextmanager
async def open_page(
    url: str,
    viewport_width: int = 1280,
    viewport_height: int = 800,
    device_scale_factor: float = 1.0,
    headless: bool = True,
    wait_until: Optional[str] = "networkidle",
):
    """
    Launch Chromium and yield a Page loaded with url.

    The browser is closed when the context exits, whatever the outcome.
    """
    async with async_playwright() as playwright:
        browser = await playwright.chromium.launch(headless=headless)
        try:
            context = await browser.new_context(
                viewport={"width": viewport_width, "height": viewport_height},
                device_scale_factor=device_scale_factor,
            )
            # Record console output from the first script on
            await context.add_init_script(_CONSOLE_CAPTURE_JS)
            page = await context.new_page()
            logger.info(f"[PageDriver] Loading {url} ({viewport_width}x{viewport_height} @{device_scale_factor}x)")
            await page.goto(url, wait_until=wait_until)
            yield page
        finally:
            await browser.close()
