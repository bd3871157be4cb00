"""
Warning filters for the API and worker processes.

openpyxl warns about workbook features it skips (headers/footers, data
validation, extensions). Contractor BOQs are full of them and none affect
the cell values we read.
"""

import warnings

# (message regex, module regex)
_OPENPYXL_NOISE = (
    (r"Cannot parse header or footer", r"openpyxl\.worksheet\.header_footer"),
    (r".*extension is not supported and will be removed", r"openpyxl\.worksheet\._reader"),
    (r"Data Validation extension is not supported", r"openpyxl\.worksheet\._reader"),
    (r"Workbook contains no default style", r"openpyxl\.styles\.stylesheet"),
    (r"Conditional Formatting extension is not supported", r"openpyxl\.worksheet\._reader"),
)


def configure_warning_filters() -> None:
    for message, module in _OPENPYXL_NOISE:
        warnings.filterwarnings("ignore", message=message, module=module)
