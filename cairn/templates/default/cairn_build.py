"""Site build for this project.

cairn bundles this file together with everything under plugins/ and calls
``build(context)`` after every successful compile. Return a callable to have it
run before the next rebuild.
"""

from __future__ import annotations

import shutil
from pathlib import Path

import mistune

PAGE = """<!doctype html>
<html lang="en">
<head><meta charset="utf-8"><title>{title}</title></head>
<body>
{body}
</body>
</html>
"""


def build(context):
    markdown = mistune.create_markdown(plugins=["strikethrough", "table"])
    content_dir = Path(context.content_dir)
    output_dir = Path(context.output_dir)
    if output_dir.exists():
        shutil.rmtree(output_dir)
    output_dir.mkdir(parents=True)

    emitted = 0
    for source in sorted(content_dir.rglob("*.md")):
        target = output_dir / source.relative_to(content_dir).with_suffix(".html")
        target.parent.mkdir(parents=True, exist_ok=True)
        body = markdown(source.read_text(encoding="utf-8"))
        target.write_text(PAGE.format(title=source.stem, body=body), encoding="utf-8")
        emitted += 1
    print(f"Emitted {emitted} files to {output_dir}")
