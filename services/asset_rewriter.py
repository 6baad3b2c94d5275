import re
from typing import Callable, Optional, Tuple
from urllib.parse import urljoin

from bs4 import BeautifulSoup

from services.asset_index import AssetIndex
from utils.logger import get_logger

logger = get_logger(__name__)

_ABSOLUTE_RE = re.compile(r"^(?:[a-z][a-z0-9+.-]*:)?//", re.IGNORECASE)
_SPECIAL_SCHEME_RE = re.compile(r"^(?:data|blob|mailto|tel|javascript|about|cid):", re.IGNORECASE)
_CSS_URL_RE = re.compile(r"""url\(\s*(?:'([^']*)'|"([^"]*)"|([^'")]*?))\s*\)""", re.IGNORECASE)


def is_absolute_url(value: str) -> bool:
    """True for scheme-qualified or protocol-relative URLs and special schemes."""
    return bool(_ABSOLUTE_RE.match(value) or _SPECIAL_SCHEME_RE.match(value))


def join_url(base_url: str, relative: str) -> str:
    return urljoin(base_url.rstrip("/") + "/", relative)


class AssetRewriterService:
    """
    Rewrites relative asset references in HTML to absolute serving URLs.

    Touched: ``src`` on image/script-like elements, ``poster`` on video,
    ``href`` on <link>, ``url(...)`` in inline ``style`` attributes and in
    <style> blocks. Absolute URLs, special schemes, fragments and anything
    already under ``base_url`` pass through unchanged. Root-relative paths are
    resolved like any other reference, so applying the rewrite twice with the
    same ``base_url`` is a no-op.
    """

    SRC_TAGS = ("img", "script", "source", "iframe", "embed", "audio", "video", "track", "input")
    ATTRIBUTE_TARGETS: Tuple[Tuple[Tuple[str, ...], str], ...] = (
        (SRC_TAGS, "src"),
        (("video",), "poster"),
        (("link",), "href"),
    )

    def rewrite(
        self,
        html: str,
        base_url: str,
        index: Optional[AssetIndex] = None,
        html_path: str = "",
    ) -> str:
        """
        Rewrite ``html`` against ``base_url``.

        With an ``index``, references that resolve to a stored asset of the
        upload become ``{base_url}/{asset_id}/{sanitized_name}``; the rest are
        URL-joined onto ``base_url``.
        """
        soup = BeautifulSoup(html, "html.parser")
        resolve = self._resolver(base_url, index, html_path)
        rewritten = 0

        for tags, attr in self.ATTRIBUTE_TARGETS:
            for el in soup.find_all(list(tags)):
                value = el.get(attr)
                if not isinstance(value, str):
                    continue
                new_value = resolve(value)
                if new_value != value:
                    el[attr] = new_value
                    rewritten += 1

        for el in soup.find_all(style=True):
            style = el.get("style")
            if isinstance(style, str):
                new_style = self.rewrite_css_urls(style, base_url, index, html_path)
                if new_style != style:
                    el["style"] = new_style
                    rewritten += 1

        for style_el in soup.find_all("style"):
            css = style_el.string
            if css is None:
                continue
            new_css = self.rewrite_css_urls(str(css), base_url, index, html_path)
            if new_css != css:
                style_el.string = new_css
                rewritten += 1

        logger.debug(f"Rewrote {rewritten} asset reference(s) against {base_url}")
        return str(soup)

    def rewrite_css_urls(
        self,
        css: str,
        base_url: str,
        index: Optional[AssetIndex] = None,
        html_path: str = "",
    ) -> str:
        """Rewrite relative ``url(...)`` references, keeping their quote style."""
        resolve = self._resolver(base_url, index, html_path)

        def _replace(match: "re.Match[str]") -> str:
            single, double, bare = match.groups()
            raw = single if single is not None else double if double is not None else bare
            new_value = resolve(raw.strip())
            if new_value == raw.strip():
                return match.group(0)
            if single is not None:
                return f"url('{new_value}')"
            if double is not None:
                return f'url("{new_value}")'
            return f"url({new_value})"

        return _CSS_URL_RE.sub(_replace, css)

    def _resolver(self, base_url: str, index: Optional[AssetIndex], html_path: str) -> Callable[[str], str]:
        prefix = base_url.rstrip("/")

        def _resolve(value: str) -> str:
            ref = value.strip()
            if (
                not ref
                or ref.startswith("#")
                or is_absolute_url(ref)
                or ref == prefix
                or ref.startswith(prefix + "/")
            ):
                return value
            if index is not None:
                asset = index.resolve(html_path, ref)
                if asset is not None:
                    return f"{prefix}/{asset.id}/{asset.sanitized_name}"
            return join_url(base_url, ref)

        return _resolve
