"""Markdown table helpers shared by the plan and progress documents."""

import re
from dataclasses import dataclass, field

_CELL_SPLIT = re.compile(r"(?<!\\)\|")
_SEPARATOR_CELL = re.compile(r"^:?-+:?$")
_EMPTY_MARKERS = {"", "-", "—", "none", "n/a"}
# Characters str.splitlines breaks on, besides "\n"
_LINE_BREAKS = "\r\x0b\x0c\x1c\x1d\x1e\x85\u2028\u2029"
_ESCAPE = re.compile(f"[\n|&<{_LINE_BREAKS}]")
_UNESCAPE = re.compile(r"<br>|\\\||&(?:amp|lt|#(?P<code>\d{1,7}));")
_ENTITIES = {"&": "&amp;", "<": "&lt;"}
_NAMED = {v: k for k, v in _ENTITIES.items()}


@dataclass
class Table:
	"""A parsed markdown table with source line numbers (1-based)."""
	headers: list[str]
	line: int
	rows: list[list[str]] = field(default_factory=list)
	row_lines: list[int] = field(default_factory=list)

	def column(self, name: str) -> int:
		"""Index of a header, matched case-insensitively; -1 if missing."""
		wanted = name.strip().lower()
		for i, header in enumerate(self.headers):
			if header.strip().lower() == wanted:
				return i
		return -1

	def records(self) -> list[tuple[int, dict[str, str]]]:
		"""Rows as (line, {lower-cased header: cell}) pairs."""
		keys = [h.strip().lower() for h in self.headers]
		return [
			(line, dict(zip(keys, row)))
			for line, row in zip(self.row_lines, self.rows)
		]


def _escape_char(match: re.Match) -> str:
	char = match.group()
	if char == "\n":
		return "<br>"
	if char == "|":
		return "\\|"
	return _ENTITIES.get(char) or f"&#{ord(char)};"


def _unescape_token(match: re.Match) -> str:
	token = match.group()
	if token == "<br>":
		return "\n"
	if token == "\\|":
		return "|"
	if match.group("code"):
		return chr(int(match.group("code")))
	return _NAMED[token]


def _char_refs(text: str) -> str:
	return "".join(f"&#{ord(c)};" for c in text)


def escape_cell(text: str) -> str:
	"""
	Escape text for a single-line table cell.

	Line breaks of every kind, pipes, '&' and '<' are escaped, and leading or
	trailing whitespace is written as character references so cell stripping
	cannot eat it. unescape_cell(escape_cell(s)) == s.
	"""
	body = text.strip()
	start = len(text) - len(text.lstrip())
	lead, trail = text[:start], text[start + len(body):]
	return _char_refs(lead) + _ESCAPE.sub(_escape_char, body) + _char_refs(trail)


def unescape_cell(text: str) -> str:
	"""Reverse escape_cell in a single pass."""
	return _UNESCAPE.sub(_unescape_token, text)


def is_table_line(line: str) -> bool:
	return line.strip().startswith("|")


def split_row(line: str) -> list[str]:
	"""Split a table row into unescaped, stripped cells."""
	text = line.strip()
	if text.startswith("|"):
		text = text[1:]
	if text.endswith("|") and not text.endswith("\\|"):
		text = text[:-1]
	return [unescape_cell(cell.strip()) for cell in _CELL_SPLIT.split(text)]


def _is_separator(cells: list[str]) -> bool:
	return bool(cells) and all(_SEPARATOR_CELL.match(c.replace(" ", "")) for c in cells)


def read_table(lines: list[str], start: int) -> tuple[Table, int]:
	"""
	Read the table beginning at lines[start].

	Returns:
		Tuple of (table, index of the first line after the table)

	Raises:
		ValueError: if a row's cell count differs from the header's
	"""
	headers = split_row(lines[start])
	table = Table(headers=headers, line=start + 1)
	i = start + 1
	while i < len(lines) and is_table_line(lines[i]):
		cells = split_row(lines[i])
		if i == start + 1 and _is_separator(cells):
			i += 1
			continue
		if len(cells) != len(headers):
			raise ValueError(
				f"line {i + 1}: expected {len(headers)} cells, got {len(cells)}"
			)
		table.rows.append(cells)
		table.row_lines.append(i + 1)
		i += 1
	return table, i


def render_table(headers: list[str], rows: list[list[str]]) -> list[str]:
	"""Render a table as markdown lines."""
	out = [
		"| " + " | ".join(escape_cell(h) for h in headers) + " |",
		"|" + "|".join("-" * (len(h) + 2) for h in headers) + "|",
	]
	for row in rows:
		out.append("| " + " | ".join(escape_cell(c) for c in row) + " |")
	return out


def split_list(cell: str) -> list[str]:
	"""Split a comma-separated cell, dropping backticks and empty markers."""
	if cell.strip().lower() in _EMPTY_MARKERS:
		return []
	items = []
	for part in cell.split(","):
		item = part.strip().strip("`").strip()
		if item:
			items.append(item)
	return items


def render_list(items, code: bool = False) -> str:
	if not items:
		return "-"
	if code:
		return ", ".join(f"`{item}`" for item in items)
	return ", ".join(items)


def optional_cell(cell: str) -> str:
	"""Map an empty marker cell back to an empty string."""
	return "" if cell.strip() in ("", "-") else cell
