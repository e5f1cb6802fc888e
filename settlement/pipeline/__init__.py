"""
Receipt pipeline.

Orchestrates: extract text → split lines → try layouts → ParsedReceipt.
"""
from settlement.pipeline.parser import parse_document, parse_lines, parse_receipt_text

__all__ = ["parse_document", "parse_lines", "parse_receipt_text"]
