"""Parse assistant output and extract structured data.

Assistant replies are free text that may wrap JSON in markdown fences,
explanations, or trailing chatter. This module pulls the structured content
out without assuming anything about the surrounding prose.
"""

import json
import re
from typing import Any, Dict, Iterator, Optional, Tuple


class OutputParser:
    """Parse assistant output and extract structured content."""

    @staticmethod
    def iter_balanced_objects(output: str) -> Iterator[Tuple[int, str]]:
        """Yield every balanced ``{...}`` block in document order.

        Braces inside JSON string literals are ignored, so a ``}`` in a
        description does not close the block early.

        Args:
            output: Raw assistant output

        Yields:
            Tuples of (start_offset, block_text)
        """
        start = output.find("{")
        while start != -1:
            depth = 0
            in_string = False
            escaped = False
            end = -1

            for pos in range(start, len(output)):
                char = output[pos]
                if in_string:
                    if escaped:
                        escaped = False
                    elif char == "\\":
                        escaped = True
                    elif char == '"':
                        in_string = False
                    continue

                if char == '"':
                    in_string = True
                elif char == "{":
                    depth += 1
                elif char == "}":
                    depth -= 1
                    if depth == 0:
                        end = pos
                        break

            if end == -1:
                # Unbalanced from here on, nothing further can close
                return

            yield start, output[start : end + 1]
            start = output.find("{", start + 1)

    @staticmethod
    def first_json_object(output: str) -> Optional[Dict[str, Any]]:
        """Return the first balanced block that decodes to a JSON object.

        Args:
            output: Raw assistant output

        Returns:
            Decoded dictionary, or None if no block decodes
        """
        if not output or not output.strip():
            return None

        for _, block in OutputParser.iter_balanced_objects(output):
            try:
                decoded = json.loads(block)
            except json.JSONDecodeError:
                continue
            if isinstance(decoded, dict):
                return decoded

        return None

    @staticmethod
    def extract_json(output: str) -> Dict[str, Any]:
        """Extract a JSON object from output, preferring fenced code blocks.

        Args:
            output: Raw assistant output

        Returns:
            Parsed JSON as dictionary, empty if nothing parses
        """
        if not output or not output.strip():
            return {}

        code_block_pattern = r"```(?:json)?\s*\n([\s\S]*?)\n```"
        for match in re.findall(code_block_pattern, output, re.MULTILINE):
            try:
                decoded = json.loads(match.strip())
            except json.JSONDecodeError:
                continue
            if isinstance(decoded, dict):
                return decoded

        return OutputParser.first_json_object(output) or {}

    @staticmethod
    def find_verdict(output: str, key: str) -> Optional[bool]:
        """Determine a pass/fail verdict from output.

        Looks for a boolean ``key`` in the embedded JSON first, then falls
        back to common textual indicators.

        Args:
            output: Raw assistant output
            key: JSON key carrying the verdict (e.g. ``passed``, ``approved``)

        Returns:
            True or False when a verdict is found, None when unclear
        """
        result = OutputParser.extract_json(output)
        if key in result:
            return bool(result[key])

        output_lower = output.lower()

        positive_patterns = [
            rf"{re.escape(key)}\s*:\s*true",
            r"all\s+checks?\s+pass",
            r"all\s+tests?\s+pass",
            r"\bapproved\b",
            r"\blgtm\b",
        ]
        negative_patterns = [
            rf"{re.escape(key)}\s*:\s*false",
            r"tests?\s+failed",
            r"checks?\s+failed",
            r"changes\s+requested",
            r"not\s+approved",
            r"\brejected\b",
        ]

        for pattern in negative_patterns:
            if re.search(pattern, output_lower):
                return False

        for pattern in positive_patterns:
            if re.search(pattern, output_lower):
                return True

        return None

    @staticmethod
    def sanitize_output(output: str, max_length: int = 4000) -> str:
        """Sanitize output for feedback and logging.

        Args:
            output: Raw output
            max_length: Maximum length to return

        Returns:
            Sanitized output string
        """
        if not output:
            return ""

        ansi_escape = re.compile(r"\x1B(?:[@-Z\\-_]|\[[0-?]*[ -/]*[@-~])")
        cleaned = ansi_escape.sub("", output)

        if len(cleaned) > max_length:
            cleaned = cleaned[:max_length] + f"\n... (truncated {len(cleaned) - max_length} characters)"

        return cleaned.strip()
