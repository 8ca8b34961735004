"""Collect translatable strings and add the missing ones to every .po file.

Strings come from ``_('...')`` calls in the email templates and from the
message argument of ``translate(...)`` and the ``*Error(...)`` exceptions in
the Python sources. Existing translations are never overwritten.

Run: python scripts/extract_messages.py
"""
from __future__ import annotations

import re
from pathlib import Path

import polib

ROOT = Path(__file__).resolve().parents[1]
TEMPLATES_DIR = ROOT / "portier" / "templates"
SOURCE_DIR = ROOT / "portier"
LOCALE_DIR = ROOT / "locale"

TEMPLATE_RE = re.compile(r"_\(\s*['\"]([\s\S]*?)['\"]\s*[,)]")
SOURCE_RE = re.compile(r"(?:translate|(?<!Value)(?<!Runtime)(?<!Notification)Error)\(\s*\"([^\"]+)\"")
CLASS_DEFAULT_RE = re.compile(r"^\s+message = \"([^\"]+)\"", re.MULTILINE)


def find_msgids() -> set[str]:
    msgids: set[str] = set()
    for p in TEMPLATES_DIR.rglob("*.html"):
        msgids.update(m.group(1) for m in TEMPLATE_RE.finditer(p.read_text(encoding="utf-8")))
    for p in SOURCE_DIR.rglob("*.py"):
        text = p.read_text(encoding="utf-8")
        msgids.update(m.group(1) for m in SOURCE_RE.finditer(text))
        msgids.update(m.group(1) for m in CLASS_DEFAULT_RE.finditer(text))
    return msgids


def ensure_in_po(lang_dir: Path, msgids: set[str]):
    po_path = lang_dir / "LC_MESSAGES" / "messages.po"
    if not po_path.exists():
        print(f"PO file not found: {po_path}")
        return
    po = polib.pofile(str(po_path))
    existing = {e.msgid for e in po}
    added = 0
    for m in sorted(msgids):
        if m not in existing:
            po.append(polib.POEntry(msgid=m, msgstr=""))
            added += 1
    if added:
        po.save()
    print(f"Updated {po_path}: +{added} entries")


def main():
    msgids = find_msgids()
    print(f"Found {len(msgids)} msgids.")
    for lang_dir in sorted(LOCALE_DIR.iterdir()):
        if not lang_dir.is_dir():
            continue
        ensure_in_po(lang_dir, msgids)


if __name__ == "__main__":
    main()
