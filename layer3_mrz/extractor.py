"""
Layer 3 — MRZ Extraction
Component: MRZ extractor
Responsibility: Isolate the fixed-width MRZ block from noisy OCR text
"""
import logging

logger = logging.getLogger(__name__)


def extract_mrz(raw_text: str) -> str:
    """
    Return the trailing run of lines sharing the last line's length.

    MRZ lines are fixed width, while OCR noise above the block rarely lands
    on exactly the same length.

    Args:
        raw_text: Newline-delimited OCR output

    Returns:
        str: Newline-joined MRZ lines, or "" if the last line is empty
    """
    lines = raw_text.split("\n")
    mrz_length = len(lines[-1])
    if mrz_length == 0:
        return ""

    start = len(lines)
    while start > 0 and len(lines[start - 1]) == mrz_length:
        start -= 1
    return "\n".join(lines[start:])


class MRZExtractor:
    """Handles MRZ isolation from recognized text"""

    def extract(self, raw_text):
        """
        Extract MRZ lines from OCR output

        Args:
            raw_text: Raw text returned by the OCR engine

        Returns:
            str: Cleaned MRZ text (may be empty)
        """
        mrz = extract_mrz(raw_text or "")
        if mrz:
            lines = mrz.split("\n")
            logger.debug(f"MRZ block: {len(lines)} line(s) of {len(lines[0])} characters")
        else:
            logger.debug("No MRZ block in OCR output")
        return mrz
