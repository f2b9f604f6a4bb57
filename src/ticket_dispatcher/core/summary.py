"""Short plain-text summaries of agent markdown output, used in ticket comments."""

import re

_SUMMARY_SECTION = re.compile(
    r"^#{1,3}\s*(?:Summary|Overview|Key Findings|TL;?DR)[^\n]*\n+(.*?)(?=\n#{1,3}\s|\n---|\Z)",
    re.IGNORECASE | re.MULTILINE | re.DOTALL,
)

MIN_PARAGRAPH_CHARS = 40


def _first_paragraph(markdown: str) -> str:
    paragraphs = []
    buf = ""
    for line in markdown.split("\n"):
        if line.startswith("#") or line.startswith("---"):
            if len(buf.strip()) > MIN_PARAGRAPH_CHARS:
                paragraphs.append(buf.strip())
            buf = ""
            continue
        buf += line + " "
    if len(buf.strip()) > MIN_PARAGRAPH_CHARS:
        paragraphs.append(buf.strip())
    return paragraphs[0] if paragraphs else ""


def _strip_markdown(text: str) -> str:
    text = re.sub(r"\*\*([^*]+)\*\*", r"\1", text)
    text = re.sub(r"\*([^*]+)\*", r"\1", text)
    text = re.sub(r"`([^`]+)`", r"\1", text)
    text = re.sub(r"^\s*[-*]\s+", "• ", text, flags=re.MULTILINE)
    text = re.sub(r"\n+", " ", text)
    return text.strip()


def extract_summary(markdown: str, max_len: int = 500) -> str:
    """Summary/Overview section if present, else the first real paragraph."""
    match = _SUMMARY_SECTION.search(markdown)
    text = match.group(1).strip() if match else ""
    if not text:
        text = _first_paragraph(markdown) or markdown[:max_len]

    text = _strip_markdown(text)

    if len(text) > max_len:
        truncated = text[:max_len]
        last_sentence = truncated.rfind(". ")
        if last_sentence > max_len * 0.4:
            text = truncated[: last_sentence + 1]
        else:
            text = truncated + "…"
    return text
