"""
BOQ import module - heuristic extraction of Bill of Quantities workbooks.

Submodules:
- boq_import: request-facing parse/retry entry points
- boq_import_parse_excel: openpyxl decoding and per-workbook orchestration
- boq_import_sheets: Sheet Classifier (bill/section identity from sheet names)
- boq_import_columns: Column Detector (header row and column roles)
- boq_import_rows: Row Classifier & Extractor (numbers, row types, PC, P&A)
- boq_import_fallback: positional fallback parser for manual retry
- boq_import_confidence: extraction confidence tiers
- boq_import_rules: versioned regex rule tables
- boq_import_models: Pydantic data models (ParseResult, Bill, ParsedSection, ParsedItem)
"""
