#!/usr/bin/env python3
"""
Generate a Capacity Report Excel file from a capacity summary JSON

Creates an Excel workbook with:
- Summary tab: Run metadata and headline totals
- Totals tab: Count and size per workload
- Region x Workload tab: Count and size per (region, workload) cell
- Completeness tab: Share of resources with a usable size
- Protection tab: Backup coverage per cell (protected size is an estimate)
- Data Quality tab: Skipped records, orphans, probe and collector failures
"""
import json
import sys
from typing import Any, Dict, List, Optional

from openpyxl import Workbook
from openpyxl.styles import Alignment, Border, Font, PatternFill, Side
from openpyxl.utils import get_column_letter

# Styles
HEADER_FILL = PatternFill(start_color="4472C4", end_color="4472C4", fill_type="solid")
HEADER_FONT_WHITE = Font(bold=True, color="FFFFFF")
SECTION_FONT = Font(bold=True, size=12)
THIN_BORDER = Border(
    left=Side(style='thin'),
    right=Side(style='thin'),
    top=Side(style='thin'),
    bottom=Side(style='thin')
)
COVERAGE_FILLS = {
    'high': PatternFill(start_color="C6EFCE", end_color="C6EFCE", fill_type="solid"),
    'partial': PatternFill(start_color="FFEB9C", end_color="FFEB9C", fill_type="solid"),
    'none': PatternFill(start_color="FFC7CE", end_color="FFC7CE", fill_type="solid"),
}

# (tab title, report key, [(header, field, width)])
TABLE_SHEETS = [
    ("Totals", 'totals_by_workload', [
        ("Workload", 'workload', 28),
        ("Count", 'count', 12),
        ("Size (GiB)", 'size_gib', 15),
        ("Size (TiB)", 'size_tib', 15),
    ]),
    ("Region x Workload", 'totals_by_region_workload', [
        ("Region", 'region', 18),
        ("Workload", 'workload', 28),
        ("Count", 'count', 12),
        ("Size (GiB)", 'size_gib', 15),
        ("Size (TiB)", 'size_tib', 15),
    ]),
    ("Completeness", 'completeness', [
        ("Workload", 'workload', 28),
        ("Discovered", 'discovered', 14),
        ("With Size", 'with_size', 14),
        ("Completeness %", 'completeness_percent', 16),
    ]),
    ("Protection", 'protection', [
        ("Region", 'region', 18),
        ("Workload", 'workload', 28),
        ("Discovered", 'discovered', 14),
        ("Protected", 'protected', 14),
        ("% Protected", 'percent_protected', 14),
        ("Protected Size (TiB, est.)", 'protected_size_tib', 24),
        ("On-Premises", 'on_prem_flag', 14),
    ]),
    ("Data Quality", 'data_quality', [
        ("Kind", 'kind', 20),
        ("Identity", 'identity', 60),
        ("Detail", 'detail', 80),
    ]),
]


def load_summary(filepath: str) -> Dict[str, Any]:
    """Load capacity summary JSON file."""
    with open(filepath) as f:
        return json.load(f)


def coverage_band(percent: Optional[float]) -> str:
    """Bucket a protection percentage for cell colouring."""
    if not percent:
        return 'none'
    if percent >= 80:
        return 'high'
    return 'partial'


def write_table(ws, columns: List, rows: List[Dict], start_row: int = 1) -> int:
    """Write a header plus data rows; returns the last row written."""
    for col_idx, (header, _field, width) in enumerate(columns, start=1):
        cell = ws.cell(row=start_row, column=col_idx, value=header)
        cell.fill = HEADER_FILL
        cell.font = HEADER_FONT_WHITE
        cell.border = THIN_BORDER
        ws.column_dimensions[get_column_letter(col_idx)].width = width

    row_idx = start_row
    for row_idx, row in enumerate(rows, start=start_row + 1):
        for col_idx, (_header, field, _width) in enumerate(columns, start=1):
            value = row.get(field, '')
            if isinstance(value, bool):
                value = "Yes" if value else "No"
            cell = ws.cell(row=row_idx, column=col_idx, value=value)
            cell.border = THIN_BORDER
            if field == 'detail':
                cell.alignment = Alignment(wrap_text=True, vertical='top')
            if field == 'percent_protected':
                cell.fill = COVERAGE_FILLS[coverage_band(value)]

    return row_idx


def generate_report(summary_path: str, output_path: str):
    data = load_summary(summary_path)
    metadata = data.get('metadata', {})
    summary = data.get('summary', {})

    wb = Workbook()

    # --- Summary Sheet ---
    ws_summary = wb.active
    assert ws_summary is not None, "Workbook must have an active sheet"
    ws_summary.title = "Summary"

    ws_summary['A1'] = "Capacity Report Summary"
    ws_summary['A1'].font = Font(bold=True, size=16)
    ws_summary.merge_cells('A1:D1')

    info = [
        ("Organization:", metadata.get('org_name') or 'N/A'),
        ("Provider:", metadata.get('provider', 'N/A')),
        ("Run ID:", metadata.get('run_id', 'N/A')),
        ("Report Generated:", metadata.get('timestamp') or metadata.get('generated_at', 'N/A')),
        ("Storage Aggregation Mode:", metadata.get('storage_aggregation_mode', 'N/A')),
        ("Anonymization Scope:", metadata.get('anonymize_scope', 'N/A')),
    ]
    for row_idx, (label, value) in enumerate(info, start=3):
        ws_summary.cell(row=row_idx, column=1, value=label)
        ws_summary.cell(row=row_idx, column=2, value=value)

    section_row = len(info) + 4
    ws_summary.cell(row=section_row, column=1, value="Headline Totals").font = SECTION_FONT
    headline = [
        {'metric': "Total Resources", 'value': summary.get('total_resources', 0)},
        {'metric': "Total Size (TiB)", 'value': summary.get('total_size_tib', 0)},
        {'metric': "Workloads", 'value': summary.get('workloads', 0)},
        {'metric': "Regions", 'value': summary.get('regions', 0)},
        {'metric': "Data Quality Events", 'value': summary.get('data_quality_events', 0)},
    ]
    write_table(ws_summary, [("Metric", 'metric', 30), ("Value", 'value', 20)], headline, start_row=section_row + 1)

    # --- Table Sheets ---
    for title, key, columns in TABLE_SHEETS:
        ws = wb.create_sheet(title=title)
        rows = data.get(key, [])
        write_table(ws, columns, rows)
        ws.freeze_panes = 'A2'
        ws.auto_filter.ref = f"A1:{get_column_letter(len(columns))}{len(rows) + 1}"

    wb.save(output_path)

    print(f"Capacity Report Generated: {output_path}")
    print(f"=" * 60)
    print(f"Resources: {summary.get('total_resources', 0):,}")
    print(f"Total Size: {summary.get('total_size_tib', 0):,.3f} TiB")
    print(f"Data Quality Events: {summary.get('data_quality_events', 0)}")


if __name__ == '__main__':
    if len(sys.argv) < 2:
        print("Usage: generate_capacity_report.py <cca_capacity_summary.json> [output.xlsx]")
        sys.exit(1)
    summary_path = sys.argv[1]
    output_path = sys.argv[2] if len(sys.argv) > 2 else summary_path.rsplit('.', 1)[0] + '.xlsx'

    generate_report(summary_path, output_path)
