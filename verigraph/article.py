"""Article decomposition.

An article is published as its images followed by one text item. The text
item's body is an XML envelope around the article's first text content that
lists every image with its content hash, so the article's identity commits to
the exact media it shipped with.
"""

from __future__ import annotations

import dataclasses
from typing import List, Sequence, Tuple
from xml.sax.saxutils import escape

from verigraph.canonical import Canonicalizer
from verigraph.errors import InputError
from verigraph.schema import TEXT_MIME, Article, ContentItem, ContentKind, ImageItem, Ownership, TextItem

ARTICLE_BODY_VERSION = "1.0"


def _image_entry(image: ContentItem, digest: str) -> str:
    return (
        "<image>"
        f"<title>{escape(image.title)}</title>"
        f"<contentType>{escape(image.content_type)}</contentType>"
        f"<description>{escape(image.description)}</description>"
        f"<creditedSource>{escape(image.credited_source)}</creditedSource>"
        f"<hash>{escape(digest)}</hash>"
        "</image>"
    )


def build_article_body(article: Article, main_body: str, images: Sequence[Tuple[ContentItem, str]]) -> str:
    """XML article envelope.

    ``main_body`` is embedded as-is (it is already markup); every other value
    is escaped.
    """
    meta = article.metadata
    contents = "".join(_image_entry(image, digest) for image, digest in images)
    return (
        "<article>"
        f"<version>{ARTICLE_BODY_VERSION}</version>"
        "<header>"
        f"<title>{escape(meta.title)}</title>"
        f"<description>{escape(meta.description)}</description>"
        f"<datePublished>{escape(meta.date_published)}</datePublished>"
        f"<id>{escape(meta.id)}</id>"
        f"<canonicalUrl>{escape(meta.uri)}</canonicalUrl>"
        f"<publishedBy>{escape(meta.origin)}</publishedBy>"
        "</header>"
        f"<main><section>{main_body}</section></main>"
        f"<contents>{contents}</contents>"
        "</article>"
    )


def break_article(article: Article, canonicalizer: Canonicalizer) -> List[ContentItem]:
    """Content items for ``article``: its images, then the article text.

    Raises:
        InputError: the article has no text content
    """
    meta = article.metadata
    images: List[Tuple[ContentItem, str]] = []
    for content in article.contents:
        if isinstance(content, ImageItem):
            image = dataclasses.replace(content, origin=meta.origin)
            images.append((image, canonicalizer.identity(image)))

    texts = [c for c in article.contents if c.kind is ContentKind.TEXT]
    if not texts:
        raise InputError("contents", "article has no text content")
    first = texts[0]
    main_body = first.body if isinstance(first, TextItem) else ""

    text = TextItem(
        title=meta.title,
        description=meta.description,
        uri=meta.uri,
        authority=meta.authority,
        content_type=TEXT_MIME,
        published=meta.date_published,
        ownership=Ownership.OWNED,
        source_id=meta.id,
        origin=meta.origin,
        encrypt=first.encrypt,
        body=build_article_body(article, main_body, images),
    )
    return [image for image, _ in images] + [text]
