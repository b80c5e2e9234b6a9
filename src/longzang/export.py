from __future__ import annotations

import csv
import io
from datetime import datetime
from html import escape
from typing import Iterable, Mapping

from .catalog import Volume, VolumeStatus

CSV_COLUMNS = (
    "volumeId",
    "volumeNumber",
    "volumeTitle",
    "status",
    "name",
    "phone",
    "plannedDays",
    "claimedAt",
    "expectedCompletionDate",
    "readingUrl",
    "remarks",
)

STATUS_LABELS = {
    VolumeStatus.UNCLAIMED: "未认领",
    VolumeStatus.CLAIMED: "已认领",
    VolumeStatus.COMPLETED: "已完成",
}


def _cell(value: object) -> str:
    if value is None:
        return ""
    return str(value)


def claims_to_csv(records: Iterable[Mapping[str, object]]) -> str:
    """One header row plus one row per claim record, CRLF-terminated.

    The CRLF terminator makes the writer quote fields holding a bare CR as
    well as LF, commas and quotes, so the output reads back unchanged
    through ``csv.reader``.
    """
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\r\n")
    writer.writerow(CSV_COLUMNS)
    for record in records:
        writer.writerow([_cell(record.get(column)) for column in CSV_COLUMNS])
    return buffer.getvalue()


ADMIN_HTML = """<!DOCTYPE html>
<html lang="zh-CN">
<head>
  <meta charset="utf-8">
  <title>认领管理</title>
  <meta name="viewport" content="width=device-width, initial-scale=1">
  <style>
    body {{
      margin: 0;
      padding: 1.5rem;
      font-family: -apple-system, BlinkMacSystemFont, "PingFang SC", "Noto Sans CJK SC", sans-serif;
      background: #fbf7f0;
      color: #3b2f2a;
    }}
    h1 {{ margin: 0 0 0.5rem; font-size: 1.4rem; }}
    .summary {{ color: #7a6a5f; margin-bottom: 1rem; }}
    table {{ border-collapse: collapse; width: 100%; background: #fff; }}
    th, td {{ border: 1px solid #e4d8c8; padding: 0.45rem 0.6rem; font-size: 0.9rem; text-align: left; }}
    th {{ background: #f3eadc; }}
    td.status-claimed {{ color: #b45309; }}
    td.status-completed {{ color: #15803d; }}
  </style>
</head>
<body>
  <h1>认领管理</h1>
  <div class="summary">{summary}</div>
  <table>
    <thead>
      <tr><th>卷号</th><th>经名</th><th>状态</th><th>认领人</th><th>电话</th><th>计划天数</th><th>认领时间</th><th>预计完成</th><th>备注</th></tr>
    </thead>
    <tbody>
{rows}
    </tbody>
  </table>
</body>
</html>
"""


def _date_text(value: datetime | None) -> str:
    if value is None:
        return "-"
    return value.strftime("%Y-%m-%d %H:%M")


def render_admin_view(volumes: list[Volume], summary: Mapping[str, int]) -> str:
    rows: list[str] = []
    for volume in volumes:
        if volume.status is VolumeStatus.UNCLAIMED:
            continue
        cells = [
            f"<td>{escape(volume.volume_number)}</td>",
            f"<td>{escape(volume.volume_title)}</td>",
            f'<td class="status-{volume.status.value}">{STATUS_LABELS[volume.status]}</td>',
            f"<td>{escape(volume.claimer_name or '-')}</td>",
            f"<td>{escape(volume.claimer_phone or '-')}</td>",
            f"<td>{volume.planned_days if volume.planned_days is not None else '-'}</td>",
            f"<td>{_date_text(volume.claimed_at)}</td>",
            f"<td>{_date_text(volume.expected_completion_date)}</td>",
            f"<td>{escape(volume.remarks or '')}</td>",
        ]
        rows.append("      <tr>" + "".join(cells) + "</tr>")
    if not rows:
        rows.append('      <tr><td colspan="9">暂无认领记录</td></tr>')
    summary_text = (
        f"共 {summary.get('total', 0)} 卷 · "
        f"已认领 {summary.get(VolumeStatus.CLAIMED.value, 0)} · "
        f"已完成 {summary.get(VolumeStatus.COMPLETED.value, 0)} · "
        f"未认领 {summary.get(VolumeStatus.UNCLAIMED.value, 0)}"
    )
    return ADMIN_HTML.format(summary=summary_text, rows="\n".join(rows))
