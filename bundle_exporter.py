"""
Page Gobbler - Bundle Exporter
Packs a pipeline result into a single zip archive
"""

import io
import json
import logging
import re
import zipfile
from typing import List, Union

from pydantic import BaseModel

from capture_models import ConsoleEntry, PipelineResult, Stylesheet

logger = logging.getLogger(__name__)

MAX_FILENAME_CHARS = 50


def sanitize_filename(value: str) -> str:
    """Replace everything but letters, digits, '_' and '-' and cap the length"""
    return re.sub(r'[^a-zA-Z0-9_-]', '_', value or 'page')[:MAX_FILENAME_CHARS]


def bundle_filename(result: PipelineResult) -> str:
    return f"gobble_{sanitize_filename(result.page.title)}.zip"


def section_filename(index: int, extension: str) -> str:
    """1-based section file name inside the bundle"""
    return f"section_{index + 1}.{extension}"


def build_bundle(result: PipelineResult) -> bytes:
    """
    Build the zip archive for a result

    Contains section_N.<ext> for every section and metadata.json, plus each
    page artifact the capture produced: page_text.txt, dom_structure.html,
    assets.json, structured_data.json, design_tokens.json, styles.css,
    resources.json, forms.json, links.json and console.log.
    """
    page = result.page
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, 'w', compression=zipfile.ZIP_STORED) as zf:
        for i, section in enumerate(result.sections):
            # Images are already compressed
            zf.writestr(section_filename(i, section.extension), section.data)

        zf.writestr("metadata.json", json.dumps(result.metadata, indent=2, default=str))

        if result.text:
            zf.writestr("page_text.txt", result.text)

        if page.dom_structure:
            zf.writestr("dom_structure.html", page.dom_structure)

        zf.writestr("assets.json", _to_json(page.image_assets))

        if page.structured_data:
            zf.writestr("structured_data.json", _to_json(page.structured_data))

        if page.design_tokens:
            zf.writestr("design_tokens.json", _to_json(page.design_tokens))

        css = build_styles(page.stylesheets)
        if css:
            zf.writestr("styles.css", css)

        zf.writestr("resources.json", _to_json(page.external_resources))

        if page.forms:
            zf.writestr("forms.json", _to_json(page.forms))

        if page.links:
            zf.writestr("links.json", _to_json(page.links))

        if page.console_logs:
            zf.writestr("console.log", build_console_log(page.console_logs))

    data = buffer.getvalue()
    logger.info(f"[BundleExporter] Built bundle with {len(result.sections)} section(s), {len(data)} bytes")
    return data


def build_styles(stylesheets: List[Stylesheet]) -> str:
    """Concatenate readable stylesheets, each headed by a comment naming its source"""
    blocks = []
    for sheet in stylesheets:
        if not sheet.css:
            continue
        source = f"Inline style block {sheet.index}" if sheet.type == "inline" else sheet.href
        blocks.append(f"/* {source} */\n{sheet.css}")
    return "\n\n".join(blocks)


def build_console_log(entries: List[ConsoleEntry]) -> str:
    return "\n".join(f"[{e.timestamp}] [{e.level.upper()}] {e.message}" for e in entries)


def _to_json(value: Union[BaseModel, List[BaseModel]]) -> str:
    if isinstance(value, list):
        return json.dumps([item.model_dump(mode="json") for item in value], indent=2)
    return json.dumps(value.model_dump(mode="json"), indent=2)
