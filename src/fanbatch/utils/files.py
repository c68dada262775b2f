import json
import typing as t

PARSE_ERROR_MESSAGE = "JSON parsing error on result line"


def encode_jsonl(lines: t.Iterable[dict[str, t.Any]]) -> bytes:
    """Serialize request lines into a newline-delimited JSON document."""
    return "\n".join(json.dumps(obj=line) for line in lines).encode(encoding="utf-8")


def parse_jsonl_text(text: str) -> list[dict[str, t.Any]]:
    """Parse JSONL content, keeping malformed lines as error records.

    Blank lines are skipped. A line that does not decode to a JSON object is
    returned as ``{"error": ..., "raw_line": ..., "line_number": ...}`` so the
    rest of the batch is still usable.

    Args:
        text (str): Raw JSONL content.

    Returns:
        list[dict]: One record per non-blank line, in file order.
    """
    records: list[dict[str, t.Any]] = []
    for line_number, line in enumerate(text.splitlines(), start=1):
        stripped = line.strip()
        if not stripped:
            continue
        try:
            record = json.loads(stripped)
        except json.JSONDecodeError:
            record = None
        if not isinstance(record, dict):
            records.append(
                {"error": PARSE_ERROR_MESSAGE, "raw_line": stripped, "line_number": line_number}
            )
            continue
        records.append(record)
    return records


def is_parse_error_record(record: t.Mapping[str, t.Any]) -> bool:
    return record.get("error") == PARSE_ERROR_MESSAGE and "raw_line" in record
