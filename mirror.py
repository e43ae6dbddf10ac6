from __future__ import annotations

import argparse
import hashlib
import json
import logging
import mimetypes
import os
import re
import sys
import time
from collections import deque
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence, Tuple
from urllib.parse import urljoin, urlparse, urlunparse

import requests
from bs4 import BeautifulSoup
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from models import DEFAULT_MAX_DEPTH, DEFAULT_USER_AGENT


logger = logging.getLogger(__name__)

ATTRS_TO_SCAN = ("src", "href", "poster", "data-src", "data-href")
LINK_RELS = {"stylesheet", "icon", "shortcut", "preload", "apple-touch-icon", "manifest", "modulepreload"}
CSS_URL_RE = re.compile(r"url\(([^)]+)\)", re.IGNORECASE)
BAD_SCHEMES = ("javascript:", "mailto:", "tel:", "data:", "#")
SAFE_NAME_RE = re.compile(r"[^A-Za-z0-9._-]+")
SAFE_QUERY_RE = re.compile(r"[^A-Za-z0-9._=&-]+")
HTML_MIMES = ("text/html", "application/xhtml")
ASSET_CATEGORIES = {
    ".jpg": "images",
    ".jpeg": "images",
    ".png": "images",
    ".gif": "images",
    ".svg": "images",
    ".webp": "images",
    ".avif": "images",
    ".ico": "images",
    ".bmp": "images",
    ".css": "css",
    ".js": "js",
    ".mjs": "js",
    ".woff": "fonts",
    ".woff2": "fonts",
    ".ttf": "fonts",
    ".eot": "fonts",
    ".otf": "fonts",
    ".mp4": "media",
    ".webm": "media",
    ".mp3": "media",
    ".ogg": "media",
    ".wav": "media",
    ".pdf": "docs",
    ".doc": "docs",
    ".docx": "docs",
}
MIME_CATEGORIES = (
    ("image/", "images"),
    ("text/css", "css"),
    ("javascript", "js"),
    ("font/", "fonts"),
    ("video/", "media"),
    ("audio/", "media"),
    ("application/pdf", "docs"),
)
SCROLL_VIEWPORTS = 10
SCROLL_PAUSE_MS = 400


@dataclass
class FileRecord:
    url: str
    local_path: str
    mime: str


@dataclass
class MirrorResult:
    target_url: str
    output_dir: str
    site_dir: str
    files_downloaded: int
    missing_urls: List[str]
    files: List[FileRecord]
    seconds: float


class SiteMirrorTool:
    def __init__(self, timeout: int = 30, user_agent: str = DEFAULT_USER_AGENT) -> None:
        self.session = requests.Session()
        retry = Retry(
            total=3,
            connect=3,
            read=3,
            backoff_factor=0.8,
            status_forcelist=(429, 500, 502, 503, 504),
            allowed_methods=("GET",),
        )
        adapter = HTTPAdapter(max_retries=retry)
        self.session.mount("https://", adapter)
        self.session.mount("http://", adapter)
        self.session.headers["User-Agent"] = user_agent
        self.user_agent = user_agent
        self.timeout = timeout

    def run(
        self,
        target_url: str,
        output_dir: str,
        max_depth: int = DEFAULT_MAX_DEPTH,
        scroll_to_bottom: bool = False,
        max_files: int = 2000,
        progress_callback: Optional[Callable[[Dict[str, object]], None]] = None,
    ) -> MirrorResult:
        started = time.time()
        normalized = self._normalize_target(target_url)
        root = Path(output_dir)
        if root.exists():
            raise FileExistsError(f"Output directory already exists: {root}")

        host = urlparse(normalized).netloc
        domain = self._bare_host(host)
        site_dir = root / self._safe_name(host)
        site_dir.mkdir(parents=True)

        queue: deque[Tuple[str, int]] = deque([(normalized, 0)])
        seen: set[str] = set()
        files: Dict[str, FileRecord] = {}
        claimed: Dict[str, str] = {}
        missing: List[str] = []

        while queue and len(files) < max_files:
            current_url, depth = queue.popleft()
            if current_url in seen:
                continue
            seen.add(current_url)

            if not files:
                if scroll_to_bottom:
                    download = self._render_with_browser(current_url)
                else:
                    download = self._download(current_url, required=True)
            else:
                download = self._download(current_url)
            if not download:
                missing.append(current_url)
                continue

            body, mime = download
            local_rel = self._local_path_for_url(current_url, mime, claimed)
            local_abs = site_dir / local_rel
            local_abs.parent.mkdir(parents=True, exist_ok=True)
            local_abs.write_bytes(body)
            files[current_url] = FileRecord(url=current_url, local_path=local_rel, mime=mime)
            self._emit_progress(
                progress_callback,
                files_downloaded=len(files),
                queue_size=len(queue),
                current_url=current_url,
            )

            pages, assets = self._discover_links(current_url, body, mime)
            for link in assets:
                if link not in seen and self._is_allowed_asset(domain, link):
                    queue.append((link, depth))
            if depth < max_depth:
                for link in pages:
                    if link not in seen and self._bare_host(urlparse(link).netloc) == domain:
                        queue.append((link, depth + 1))

        url_to_local = {u: r.local_path for u, r in files.items()}
        for original_url, record in files.items():
            self._rewrite_for_offline(
                site_dir=site_dir,
                file_path=site_dir / record.local_path,
                page_url=original_url,
                mime=record.mime,
                url_to_local=url_to_local,
            )

        return MirrorResult(
            target_url=normalized,
            output_dir=str(root),
            site_dir=str(site_dir),
            files_downloaded=len(files),
            missing_urls=missing,
            files=list(files.values()),
            seconds=round(time.time() - started, 2),
        )

    def _emit_progress(self, callback: Optional[Callable[[Dict[str, object]], None]], **payload: object) -> None:
        if callback is None:
            return
        callback(payload)

    def _download(self, url: str, required: bool = False) -> Optional[Tuple[bytes, str]]:
        try:
            response = self.session.get(url, timeout=(10, self.timeout))
            response.raise_for_status()
        except requests.RequestException as exc:
            if required:
                raise RuntimeError(f"Could not download {url}: {exc}") from exc
            logger.warning("Skipping %s: %s", url, exc)
            return None
        mime = (response.headers.get("Content-Type") or "").split(";")[0].strip().lower()
        if not mime:
            mime = mimetypes.guess_type(urlparse(url).path)[0] or "application/octet-stream"
        return response.content, mime

    def _render_with_browser(self, url: str) -> Tuple[bytes, str]:
        try:
            from playwright.sync_api import sync_playwright
        except ImportError as exc:
            raise RuntimeError(
                "Playwright not installed. Run: pip install playwright && playwright install chromium"
            ) from exc

        with sync_playwright() as pw:
            browser = pw.chromium.launch(headless=True, args=["--no-sandbox", "--disable-setuid-sandbox"])
            try:
                page = browser.new_context(user_agent=self.user_agent).new_page()
                page.goto(url, wait_until="networkidle", timeout=self.timeout * 1000)
                for _ in range(SCROLL_VIEWPORTS):
                    page.evaluate("window.scrollBy(0, window.innerHeight)")
                    page.wait_for_timeout(SCROLL_PAUSE_MS)
                html = page.content()
            finally:
                browser.close()
        return html.encode("utf-8"), "text/html"

    def _discover_links(self, base_url: str, body: bytes, mime: str) -> Tuple[List[str], List[str]]:
        pages: List[str] = []
        assets: List[str] = []

        if self._is_html(mime):
            soup = BeautifulSoup(self._decode_text(body), "html.parser")
            for tag in soup.find_all(True):
                for attr in ATTRS_TO_SCAN:
                    value = tag.get(attr)
                    if not value or not isinstance(value, str):
                        continue
                    if tag.name == "link" and attr == "href" and not self._wanted_link(tag):
                        continue
                    resolved = self._resolve_url(base_url, value)
                    if not resolved:
                        continue
                    if tag.name == "a" and attr == "href":
                        pages.append(resolved)
                    else:
                        assets.append(resolved)

                srcset = tag.get("srcset")
                if srcset:
                    for item in srcset.split(","):
                        candidate = item.strip().split(" ")[0]
                        resolved = self._resolve_url(base_url, candidate)
                        if resolved:
                            assets.append(resolved)

                style = tag.get("style")
                if style:
                    assets.extend(self._css_links(base_url, style))

        elif "text/css" in mime:
            assets.extend(self._css_links(base_url, self._decode_text(body)))

        return list(dict.fromkeys(pages)), list(dict.fromkeys(assets))

    def _css_links(self, base_url: str, text: str) -> List[str]:
        links = []
        for match in CSS_URL_RE.findall(text):
            resolved = self._resolve_url(base_url, match.strip().strip("\"'"))
            if resolved:
                links.append(resolved)
        return links

    def _wanted_link(self, tag) -> bool:
        rel = tag.get("rel") or []
        if isinstance(rel, str):
            rel = rel.split()
        return any(r.lower() in LINK_RELS for r in rel)

    def _rewrite_for_offline(
        self,
        site_dir: Path,
        file_path: Path,
        page_url: str,
        mime: str,
        url_to_local: Dict[str, str],
    ) -> None:
        if not file_path.exists():
            return

        def _local(value: str) -> Optional[str]:
            resolved = self._resolve_url(page_url, value)
            if not resolved:
                return None
            local = url_to_local.get(resolved)
            if not local:
                return None
            return self._relative_link(site_dir, file_path, local)

        def _replace_css(match: re.Match[str]) -> str:
            rel = _local(match.group(1).strip().strip("\"'"))
            return f"url('{rel}')" if rel else match.group(0)

        if self._is_html(mime):
            soup = BeautifulSoup(self._decode_text(file_path.read_bytes()), "html.parser")
            changed = False

            for tag in soup.find_all(True):
                for attr in ATTRS_TO_SCAN:
                    value = tag.get(attr)
                    if not value or not isinstance(value, str):
                        continue
                    rel = _local(value)
                    if rel:
                        tag[attr] = rel
                        changed = True

                srcset = tag.get("srcset")
                if srcset:
                    parts = []
                    any_change = False
                    for item in srcset.split(","):
                        chunk = item.strip()
                        if not chunk:
                            continue
                        left = chunk.split(" ")
                        desc = " ".join(left[1:])
                        rel = _local(left[0])
                        if rel:
                            any_change = True
                            parts.append(f"{rel} {desc}".strip())
                        else:
                            parts.append(chunk)
                    if any_change:
                        tag["srcset"] = ", ".join(parts)
                        changed = True

                style = tag.get("style")
                if style:
                    rewritten_style = CSS_URL_RE.sub(_replace_css, style)
                    if rewritten_style != style:
                        tag["style"] = rewritten_style
                        changed = True

            if changed:
                file_path.write_text(str(soup), encoding="utf-8")

        elif "text/css" in mime:
            text = self._decode_text(file_path.read_bytes())
            rewritten = CSS_URL_RE.sub(_replace_css, text)
            if rewritten != text:
                file_path.write_text(rewritten, encoding="utf-8")

    def _relative_link(self, site_dir: Path, file_path: Path, target_local: str) -> str:
        target_abs = site_dir / target_local
        return os.path.relpath(target_abs, file_path.parent).replace("\\", "/")

    def _local_path_for_url(self, url: str, mime: str, claimed: Dict[str, str]) -> str:
        parsed = urlparse(url)
        path = parsed.path or "/"
        ext = os.path.splitext(path)[1].lower()
        category = None if self._is_html(mime) else (ASSET_CATEGORIES.get(ext) or self._category_for_mime(mime))

        if category:
            name = self._safe_name(path.rstrip("/").split("/")[-1] or "file")
            if "." not in name:
                name += mimetypes.guess_extension(mime) or ""
            stem, suffix = os.path.splitext(name)
            base = f"{category}/{stem}"
            query = f"?{SAFE_QUERY_RE.sub('_', parsed.query)}" if parsed.query else ""
        else:
            parts = [self._safe_name(p) for p in path.split("/") if p]
            if not parts or path.endswith("/"):
                parts.append("index.html")
            elif "." not in parts[-1]:
                parts.append("index.html" if self._is_html(mime) else "index")
            stem, suffix = os.path.splitext("/".join(parts))
            base = stem
            query = ""
            if parsed.query:
                base = f"{stem}__q_{hashlib.sha1(parsed.query.encode('utf-8')).hexdigest()[:8]}"

        local = f"{base}{suffix}{query}"
        owner = claimed.get(local)
        if owner is not None and owner != url:
            local = f"{base}-{hashlib.sha1(url.encode('utf-8')).hexdigest()[:8]}{suffix}{query}"
        claimed[local] = url
        return local

    def _category_for_mime(self, mime: str) -> Optional[str]:
        for prefix, category in MIME_CATEGORIES:
            if prefix in mime:
                return category
        return None

    def _is_html(self, mime: str) -> bool:
        return any(m in mime for m in HTML_MIMES)

    def _is_allowed_asset(self, domain: str, url: str) -> bool:
        host = self._bare_host(urlparse(url).netloc)
        return host == domain or host.endswith("." + domain) or "cdn" in host or "static" in host

    def _bare_host(self, host: str) -> str:
        host = host.lower()
        return host[4:] if host.startswith("www.") else host

    def _safe_name(self, text: str) -> str:
        value = SAFE_NAME_RE.sub("_", text.strip())
        value = value.strip("._")
        return value or "file"

    def _resolve_url(self, base_url: str, value: str) -> Optional[str]:
        candidate = value.strip()
        if not candidate:
            return None
        if candidate.lower().startswith(BAD_SCHEMES):
            return None

        resolved = urljoin(base_url, candidate)
        parsed = urlparse(resolved)
        if parsed.scheme not in ("http", "https"):
            return None
        return self._clean_url(resolved)

    def _clean_url(self, url: str) -> str:
        parsed = urlparse(url)
        return urlunparse((parsed.scheme, parsed.netloc, parsed.path or "/", "", parsed.query, ""))

    def _normalize_target(self, target_url: str) -> str:
        url = target_url.strip()
        if not url:
            raise RuntimeError("URL is required")
        if not url.startswith("http://") and not url.startswith("https://"):
            url = "https://" + url
        parsed = urlparse(url)
        if not parsed.netloc:
            raise RuntimeError("Invalid URL")
        return self._clean_url(url)

    def _decode_text(self, body: bytes) -> str:
        for encoding in ("utf-8", "latin-1"):
            try:
                return body.decode(encoding)
            except UnicodeDecodeError:
                continue
        return body.decode("utf-8", errors="ignore")


def _emit(payload: Dict[str, object]) -> None:
    print(json.dumps(payload), flush=True)


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Mirror a website into a local directory.")
    parser.add_argument("--url", required=True, help="Page to start from")
    parser.add_argument("--output", required=True, help="Target directory (must not exist)")
    parser.add_argument("--max-depth", type=int, default=DEFAULT_MAX_DEPTH, help="Page hops to follow")
    parser.add_argument("--user-agent", default=DEFAULT_USER_AGENT, help="User-Agent header")
    parser.add_argument("--scroll-to-bottom", action="store_true", help="Render the entry page in a browser")
    parser.add_argument("--max-files", type=int, default=2000, help="Stop after this many files")
    parser.add_argument("--timeout", type=int, default=30, help="Per-request read timeout in seconds")
    args = parser.parse_args(argv)

    logging.basicConfig(
        stream=sys.stderr,
        level=os.environ.get("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    _emit({"type": "start", "url": args.url})
    tool = SiteMirrorTool(timeout=args.timeout, user_agent=args.user_agent)
    try:
        result = tool.run(
            args.url,
            args.output,
            max_depth=max(0, args.max_depth),
            scroll_to_bottom=args.scroll_to_bottom,
            max_files=max(1, args.max_files),
        )
    except Exception as exc:
        logger.exception("Mirror of %s failed", args.url)
        _emit({"type": "error", "message": str(exc)})
        return 1

    _emit({"type": "complete", "files": result.files_downloaded, "outputDir": result.output_dir})
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
