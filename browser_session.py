"""
Browser session host.

Wraps one Playwright browser/context/page and exposes the primitives the
recorder and player need: navigate, snapshot the interactive elements,
act on an element, capture screenshots, stream recorded interactions.

Reuses the anti-detection launch settings and the shared cookie file, so
a login done while recording is still valid for unattended playback.
"""

from __future__ import annotations

import asyncio
import json
import logging
import random
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, Optional, Protocol

from playwright.async_api import (
    Error as PlaywrightError,
    TimeoutError as PlaywrightTimeoutError,
    async_playwright,
)

import automation_config
from automation_errors import ActionError, SessionLost
from element_resolver import ElementInfo, PageSnapshot
from recipe_models import CapturedPage

logger = logging.getLogger(__name__)

BROWSER_ARGS = [
    "--disable-blink-features=AutomationControlled",
    "--disable-dev-shm-usage",
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--start-maximized",
]

ANTI_DETECT_SCRIPT = """
Object.defineProperty(navigator, 'webdriver', {get: () => undefined});
"""

ACTION_TIMEOUT_MS = 15000
NAVIGATION_TIMEOUT_MS = 60000

# Shared by the snapshot and the recorder so both describe elements the same way
_HELPERS_JS = r"""
  const INTERACTIVE = 'button, a[href], input:not([type="hidden"]), select, textarea, '
    + '[role="button"], [role="link"], [role="menuitem"], [role="tab"], [role="checkbox"], '
    + '[tabindex]:not([tabindex="-1"])';
  const CONTROLS_ID = '__fa_controls__';

  function clean(s, max) {
    s = (s || '').replace(/\s+/g, ' ').trim();
    return max ? s.substring(0, max) : s;
  }

  function roleOf(el) {
    const r = el.getAttribute && el.getAttribute('role');
    if (r) return clean(r);
    const tag = el.tagName.toLowerCase();
    if (tag === 'a') return 'link';
    if (tag === 'button') return 'button';
    if (tag === 'input') {
      const t = (el.getAttribute('type') || 'text').toLowerCase();
      if (['submit', 'button', 'reset', 'image'].includes(t)) return 'button';
      if (['checkbox', 'radio'].includes(t)) return t;
      return 'input';
    }
    if (tag === 'select') return 'select';
    if (tag === 'textarea') return 'textarea';
    return tag;
  }

  function isVisible(el) {
    const r = el.getBoundingClientRect();
    const st = window.getComputedStyle(el);
    return r.width > 0 && r.height > 0 && st.visibility !== 'hidden' && st.display !== 'none';
  }

  function isControl(el) {
    return !!(el.closest && el.closest('#' + CONTROLS_ID));
  }

  function interactivePool(form) {
    const all = Array.from((form || document).querySelectorAll(INTERACTIVE));
    return all.filter(e => !isControl(e) && (form ? true : !e.closest('form')));
  }

  function structureOf(el) {
    const form = el.closest('form');
    const formIndex = form ? Array.from(document.forms).indexOf(form) : null;
    const idx = interactivePool(form).indexOf(el);
    return { formIndex: formIndex, elementIndex: idx >= 0 ? idx : null };
  }

  function nearbyOf(el) {
    const out = [];
    const push = (t) => { t = clean(t, 80); if (t && !out.includes(t)) out.push(t); };
    try {
      if (el.id && window.CSS && CSS.escape) {
        const lbl = document.querySelector('label[for="' + CSS.escape(el.id) + '"]');
        if (lbl) push(lbl.innerText);
      }
    } catch (_) {}
    const wrap = el.closest('label');
    if (wrap) push(wrap.innerText);
    if (el.previousElementSibling) push(el.previousElementSibling.innerText);
    if (el.nextElementSibling) push(el.nextElementSibling.innerText);
    const fieldset = el.closest('fieldset');
    const legend = fieldset && fieldset.querySelector('legend');
    if (legend) push(legend.innerText);
    return out.slice(0, 5);
  }

  function textOf(el) {
    const tag = el.tagName.toLowerCase();
    if (tag === 'input') {
      const t = (el.getAttribute('type') || 'text').toLowerCase();
      return ['submit', 'button', 'reset'].includes(t) ? clean(el.value, 100) : '';
    }
    if (tag === 'select' || tag === 'textarea') return '';
    return clean(el.innerText, 100);
  }

  function describe(el) {
    const r = el.getBoundingClientRect();
    const s = structureOf(el);
    return {
      tag: el.tagName.toLowerCase(),
      role: roleOf(el),
      text: textOf(el) || null,
      ariaLabel: clean(el.getAttribute('aria-label')) || null,
      placeholder: clean(el.getAttribute('placeholder')) || null,
      title: clean(el.getAttribute('title')) || null,
      inputType: el.tagName === 'INPUT' ? (el.getAttribute('type') || 'text').toLowerCase() : null,
      name: el.getAttribute('name'),
      domId: el.id || null,
      autocomplete: el.getAttribute('autocomplete'),
      formIndex: s.formIndex,
      elementIndex: s.elementIndex,
      parentText: el.parentElement ? (clean(el.parentElement.innerText, 120) || null) : null,
      nearbyText: nearbyOf(el),
      x: r.left, y: r.top, width: r.width, height: r.height,
      visible: isVisible(el),
    };
  }
"""

SNAPSHOT_SCRIPT = "() => {" + _HELPERS_JS + r"""
  document.querySelectorAll('[data-fa-id]').forEach(e => e.removeAttribute('data-fa-id'));
  const els = Array.from(document.querySelectorAll(INTERACTIVE)).filter(e => !isControl(e));
  return {
    url: location.href,
    viewportWidth: window.innerWidth,
    viewportHeight: window.innerHeight,
    elements: els.map((el, i) => {
      el.setAttribute('data-fa-id', String(i));
      return Object.assign({ id: i }, describe(el));
    }),
  };
}"""

CAPTURE_SCRIPT = "(() => {" + _HELPERS_JS + r"""
  if (window.__faRecorderInstalled) return;
  window.__faRecorderInstalled = true;

  function mountBadge() {
    if (!document.body || document.getElementById(CONTROLS_ID)) return;
    const badge = document.createElement('div');
    badge.id = CONTROLS_ID;
    badge.textContent = '● Recording';
    badge.style.cssText = 'position:fixed;top:8px;right:8px;z-index:2147483647;'
      + 'background:#ef4444;color:#fff;font:600 12px sans-serif;padding:4px 8px;border-radius:4px;';
    document.body.appendChild(badge);
  }
  document.addEventListener('DOMContentLoaded', mountBadge);
  mountBadge();

  function emit(type, target, event, value) {
    if (!window.__faRecordEvent || isControl(target)) return;
    const info = describe(target);
    info.type = type;
    info.timestamp = Date.now();
    info.url = location.href;
    info.pointerX = event && event.clientX != null ? event.clientX : info.x + info.width / 2;
    info.pointerY = event && event.clientY != null ? event.clientY : info.y + info.height / 2;
    info.value = info.inputType === 'password' ? '[REDACTED]' : value;
    window.__faRecordEvent(info);
  }

  document.addEventListener('click', (e) => {
    const target = (e.target.closest && e.target.closest(INTERACTIVE)) || e.target;
    if (['SELECT', 'OPTION'].includes(target.tagName)) return;
    emit('click', target, e, null);
  }, true);

  document.addEventListener('change', (e) => {
    const t = e.target;
    if (t.tagName === 'SELECT') {
      emit('select', t, null, t.value);
    } else if (t.tagName === 'TEXTAREA' ||
               (t.tagName === 'INPUT' && !['checkbox', 'radio', 'submit', 'button', 'file'].includes(t.type))) {
      emit('input', t, null, t.value);
    }
  }, true);
})();"""

PAGE_TEXT_SCRIPT = "() => document.body ? document.body.innerText : ''"


class BrowserSession(Protocol):
    """Host primitives consumed by the recorder and the player."""

    @property
    def current_url(self) -> str:
        ...

    async def navigate(self, url: str) -> None:
        ...

    async def snapshot(self, include_screenshot: bool = False) -> PageSnapshot:
        ...

    async def click(self, element: ElementInfo) -> None:
        ...

    async def fill(self, element: ElementInfo, value: str) -> None:
        ...

    async def select_option(self, element: ElementInfo, value: str) -> None:
        ...

    async def screenshot(self, clip: Optional[dict] = None) -> bytes:
        ...

    async def wait_for_settle(self, timeout_ms: int = 5000) -> None:
        ...

    async def reattach(self) -> None:
        ...

    async def start_capture(self, queue: asyncio.Queue) -> None:
        ...

    async def capture_page(self) -> CapturedPage:
        ...

    async def collect_downloads(self) -> list[str]:
        ...


def _is_closed_error(error: Exception) -> bool:
    return "closed" in str(error).lower()


class PlaywrightSession:
    """BrowserSession backed by Playwright's async API."""

    def __init__(
        self,
        headless: bool = automation_config.HEADLESS,
        cookies_file: Path | str | None = automation_config.COOKIES_FILE,
        downloads_dir: Path | str = automation_config.DOWNLOADS_DIR,
    ):
        self.headless = headless
        self.cookies_file = Path(cookies_file) if cookies_file else None
        self.downloads_dir = Path(downloads_dir)
        self._playwright = None
        self._browser = None
        self._context = None
        self._page = None
        self._last_url = ""
        self._download_tasks: list[asyncio.Task] = []

    @property
    def current_url(self) -> str:
        if self._page is not None and not self._page.is_closed():
            return self._page.url
        return self._last_url

    async def start(self) -> None:
        self._playwright = await async_playwright().start()
        self._browser = await self._playwright.chromium.launch(
            headless=self.headless, args=BROWSER_ARGS
        )
        self._context = await self._create_context()
        self._page = await self._new_page()
        logger.info(f"Browser session started ({'headless' if self.headless else 'visible'})")

    async def _create_context(self):
        vw = 1920 + random.randint(-100, 100)
        vh = 1080 + random.randint(-100, 100)
        ctx = await self._browser.new_context(
            viewport={"width": vw, "height": vh},
            user_agent=(
                "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
                "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
            ),
            locale="en-US",
            timezone_id="America/New_York",
            accept_downloads=True,
        )
        await ctx.add_init_script(ANTI_DETECT_SCRIPT)

        if self.cookies_file and self.cookies_file.exists():
            try:
                cookies = json.loads(self.cookies_file.read_text())
                await ctx.add_cookies(cookies)
                logger.info(f"Loaded {len(cookies)} cookies")
            except (OSError, ValueError, PlaywrightError) as e:
                logger.warning(f"Could not load cookies: {e}")
        return ctx

    async def _new_page(self):
        page = await self._context.new_page()
        page.on("download", self._on_download)
        return page

    def _on_download(self, download) -> None:
        self._download_tasks.append(asyncio.ensure_future(self._save_download(download)))

    async def _save_download(self, download) -> str:
        self.downloads_dir.mkdir(parents=True, exist_ok=True)
        target = self.downloads_dir / download.suggested_filename
        await download.save_as(str(target))
        logger.info(f"Saved download: {target}")
        return str(target)

    async def collect_downloads(self) -> list[str]:
        results = await asyncio.gather(*self._download_tasks, return_exceptions=True)
        paths = []
        for result in results:
            if isinstance(result, Exception):
                logger.warning(f"Download failed: {result}")
            else:
                paths.append(result)
        return paths

    async def close(self) -> None:
        if self._context is not None and self.cookies_file:
            try:
                self.cookies_file.parent.mkdir(parents=True, exist_ok=True)
                cookies = await self._context.cookies()
                self.cookies_file.write_text(json.dumps(cookies, indent=2))
                logger.info(f"Saved {len(cookies)} cookies")
            except (OSError, PlaywrightError) as e:
                logger.warning(f"Could not save cookies: {e}")
        try:
            if self._browser is not None:
                await self._browser.close()
        except PlaywrightError as e:
            logger.warning(f"Error closing browser: {e}")
        finally:
            if self._playwright is not None:
                await self._playwright.stop()
            self._browser = self._context = self._page = self._playwright = None
            logger.info("Browser session closed")

    def _require_page(self):
        if self._page is None or self._page.is_closed():
            raise SessionLost("Page is closed")
        return self._page

    @asynccontextmanager
    async def _guard(self, what: str) -> AsyncIterator[None]:
        """Translate Playwright failures into engine errors."""
        try:
            yield
        except PlaywrightTimeoutError as e:
            raise ActionError(f"{what} timed out") from e
        except PlaywrightError as e:
            if _is_closed_error(e):
                raise SessionLost(f"{what}: {e}") from e
            raise ActionError(f"{what} failed: {e}") from e

    async def navigate(self, url: str) -> None:
        page = self._require_page()
        async with self._guard(f"navigate to {url}"):
            await page.goto(url, wait_until="domcontentloaded", timeout=NAVIGATION_TIMEOUT_MS)
        self._last_url = page.url

    async def reattach(self) -> None:
        """Open a fresh page at the last known URL after the old one died."""
        if self._context is None:
            raise SessionLost("Browser context is gone")
        url = self.current_url
        try:
            self._page = await self._new_page()
        except PlaywrightError as e:
            raise SessionLost(f"Could not open a new page: {e}") from e
        if url:
            await self.navigate(url)
        logger.info(f"Reattached browser session at {url or 'about:blank'}")

    async def snapshot(self, include_screenshot: bool = False) -> PageSnapshot:
        page = self._require_page()
        async with self._guard("snapshot"):
            data = await page.evaluate(SNAPSHOT_SCRIPT)
            shot = await page.screenshot(type="png") if include_screenshot else None
        self._last_url = data["url"]
        return PageSnapshot(
            url=data["url"],
            viewport_width=int(data["viewportWidth"]),
            viewport_height=int(data["viewportHeight"]),
            elements=[ElementInfo.from_dict(e) for e in data["elements"]],
            screenshot=shot,
        )

    def _locator(self, element: ElementInfo):
        return self._require_page().locator(f'[data-fa-id="{element.element_id}"]')

    async def click(self, element: ElementInfo) -> None:
        async with self._guard(f"click <{element.tag}>"):
            await self._locator(element).click(timeout=ACTION_TIMEOUT_MS)

    async def fill(self, element: ElementInfo, value: str) -> None:
        async with self._guard(f"fill <{element.tag}>"):
            await self._locator(element).fill(value, timeout=ACTION_TIMEOUT_MS)

    async def select_option(self, element: ElementInfo, value: str) -> None:
        async with self._guard(f"select in <{element.tag}>"):
            await self._locator(element).select_option(value, timeout=ACTION_TIMEOUT_MS)

    async def screenshot(self, clip: Optional[dict] = None) -> bytes:
        page = self._require_page()
        async with self._guard("screenshot"):
            return await page.screenshot(type="png", clip=clip)

    async def wait_for_settle(self, timeout_ms: int = 5000) -> None:
        page = self._require_page()
        try:
            await page.wait_for_load_state("domcontentloaded", timeout=timeout_ms)
        except PlaywrightTimeoutError:
            logger.debug("Page did not settle within timeout, continuing")
        except PlaywrightError as e:
            if _is_closed_error(e):
                raise SessionLost(str(e)) from e
            raise

    async def start_capture(self, queue: asyncio.Queue) -> None:
        """Stream every qualifying interaction on any page of the context into queue."""
        async def on_event(_source, payload):
            if isinstance(payload, dict):
                await queue.put(payload)

        await self._context.expose_binding("__faRecordEvent", on_event)
        await self._context.add_init_script(CAPTURE_SCRIPT)
        # Pages already open missed the init script
        for page in self._context.pages:
            try:
                await page.evaluate(CAPTURE_SCRIPT)
            except PlaywrightError as e:
                logger.debug(f"Could not install capture script on {page.url}: {e}")

    async def capture_page(self) -> CapturedPage:
        page = self._require_page()
        async with self._guard("capture page"):
            return CapturedPage(
                url=page.url,
                title=await page.title(),
                text=await page.evaluate(PAGE_TEXT_SCRIPT),
                html=await page.content(),
            )


@asynccontextmanager
async def open_browser_session(headless: bool = automation_config.HEADLESS) -> AsyncIterator[PlaywrightSession]:
    """Start a session and always close it, whatever happens inside."""
    session = PlaywrightSession(headless=headless)
    try:
        await session.start()
        yield session
    finally:
        await session.close()
