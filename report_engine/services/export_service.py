"""
导出服务
把已完成执行的结果快照导出为 PDF / Excel / CSV / JSON
"""
import csv
import io
import json
import platform
from datetime import datetime
from io import BytesIO
from typing import Any, Dict, List, Optional, Tuple
from xml.sax.saxutils import escape

from reportlab.lib import colors
from reportlab.lib.enums import TA_CENTER
from reportlab.lib.pagesizes import A4
from reportlab.lib.styles import ParagraphStyle, getSampleStyleSheet
from reportlab.lib.units import inch
from reportlab.pdfbase import pdfmetrics
from reportlab.pdfbase.ttfonts import TTFont
from reportlab.platypus import Paragraph, SimpleDocTemplate, Spacer, Table, TableStyle

from openpyxl import Workbook
from openpyxl.styles import Alignment, Border, Font, PatternFill, Side
from openpyxl.utils import get_column_letter

from .dto import Execution, ReportDefinition, RenderedComponent, CHART_TYPES, EXPORT_FORMATS
from .errors import InvalidStateError, ValidationError
from ..utils.datetime_helper import to_display_string
from ..utils.logger import get_logger

logger = get_logger(__name__)

MEDIA_TYPES = {
    "pdf": "application/pdf",
    "excel": "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    "csv": "text/csv; charset=utf-8",
    "json": "application/json",
}
EXTENSIONS = {"pdf": "pdf", "excel": "xlsx", "csv": "csv", "json": "json"}

# Excel 中单独成表的组件类型
SHEET_COMPONENT_TYPES = ("table", "kpi") + CHART_TYPES


class ExportDocument:
    """导出文档：一次执行的结果快照以及报表元信息"""

    def __init__(
        self,
        title: str,
        execution_no: str,
        report_id: str,
        components: List[RenderedComponent],
        parameters: Dict[str, Any],
        total_pages: int = 1,
        result_count: int = 0,
        report_no: Optional[str] = None,
        executed_at: Optional[datetime] = None,
        execution_time_ms: Optional[float] = None
    ):
        self.title = title
        self.execution_no = execution_no
        self.report_id = report_id
        self.report_no = report_no
        self.components = sorted(components, key=lambda c: c.order_index)
        self.parameters = parameters
        self.total_pages = total_pages
        self.result_count = result_count
        # 时间取自执行记录，保证重复导出结果一致
        self.executed_at = executed_at
        self.execution_time_ms = execution_time_ms

    @classmethod
    def from_execution(cls, execution: Execution, report: Optional[ReportDefinition] = None) -> "ExportDocument":
        result = execution.result
        return cls(
            title=report.name if report else execution.execution_no,
            execution_no=execution.execution_no,
            report_id=execution.report_id,
            report_no=report.report_no if report else None,
            components=list(result.components) if result else [],
            parameters=dict(execution.parameters),
            total_pages=result.total_pages if result else 1,
            result_count=execution.result_count,
            executed_at=execution.finished_at,
            execution_time_ms=execution.execution_time_ms,
        )

    @property
    def executed_at_text(self) -> str:
        return to_display_string(self.executed_at)

    def summary_items(self) -> List[Tuple[str, Any]]:
        return [
            ("Report", self.title),
            ("Report No", self.report_no or ""),
            ("Execution No", self.execution_no),
            ("Executed At", self.executed_at_text),
            ("Parameters", json.dumps(self.parameters, ensure_ascii=False, sort_keys=True, default=str)),
            ("Components", len(self.components)),
            ("Result Count", self.result_count),
            ("Total Pages", self.total_pages),
        ]


def component_table(component: RenderedComponent) -> Tuple[List[str], List[List[Any]]]:
    """
    把渲染结果转换为二维表（表头, 数据行）

    各导出格式共用这一份表格视图，保证数值和文字在不同格式中一致；
    图表导出为其数据序列
    """
    payload = component.payload

    if component.type == "table":
        headers = [col["label"] for col in payload.get("columns", [])]
        return headers, [list(row) for row in payload.get("rows", [])]

    if component.type in CHART_TYPES:
        datasets = payload.get("datasets", [])
        headers = ["label"] + [ds["label"] for ds in datasets]
        rows = []
        for index, label in enumerate(payload.get("labels", [])):
            row = [label]
            for ds in datasets:
                data = ds.get("data", [])
                row.append(data[index] if index < len(data) else None)
            rows.append(row)
        return headers, rows

    if component.type == "kpi":
        headers = ["label", "value", "change", "unit"]
        rows = [[card.get(h) for h in headers] for card in payload.get("cards", [])]
        return headers, rows

    if component.type == "filter":
        headers = ["name", "type", "value"]
        rows = [[p.get(h) for h in headers] for p in payload.get("parameters", [])]
        return headers, rows

    return ["content"], [[payload.get("content", "")]]


def _cell_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, (list, dict)):
        return json.dumps(value, ensure_ascii=False, sort_keys=True)
    return str(value)


def _section_title(component: RenderedComponent) -> str:
    return f"{component.order_index + 1}. {component.name} [{component.type}]"


class Exporter:
    """导出策略基类：纯函数 ExportDocument -> bytes，不持有可变状态"""

    format = ""

    def render(self, document: ExportDocument) -> bytes:
        raise NotImplementedError


class JsonExporter(Exporter):
    format = "json"

    def render(self, document: ExportDocument) -> bytes:
        data = {
            "report": {
                "id": document.report_id,
                "report_no": document.report_no,
                "name": document.title,
            },
            "execution": {
                "execution_no": document.execution_no,
                "executed_at": document.executed_at.isoformat() if document.executed_at else None,
                "execution_time_ms": document.execution_time_ms,
                "parameters": document.parameters,
                "result_count": document.result_count,
                "total_pages": document.total_pages,
            },
            "components": [c.model_dump() for c in document.components],
        }
        return json.dumps(data, sort_keys=True, ensure_ascii=False, indent=2, default=str).encode("utf-8")


class CsvExporter(Exporter):
    """每个组件一个区块，区块之间空一行"""

    format = "csv"

    def render(self, document: ExportDocument) -> bytes:
        buffer = io.StringIO()
        writer = csv.writer(buffer, lineterminator="\n")

        for index, component in enumerate(document.components):
            if index > 0:
                writer.writerow([])
            headers, rows = component_table(component)
            writer.writerow([f"# {_section_title(component)}"])
            writer.writerow(headers)
            for row in rows:
                writer.writerow([_cell_text(v) for v in row])

        return buffer.getvalue().encode("utf-8")


_chinese_font = None


def _register_chinese_font() -> str:
    """
    注册中文字体（使用系统自带的字体）

    macOS 使用 PingFang SC，Windows 使用 SimSun，Linux 使用 Noto Sans CJK；都不可用时退回 Helvetica
    """
    global _chinese_font
    if _chinese_font is not None:
        return _chinese_font

    candidates = {
        "Darwin": ["/System/Library/Fonts/PingFang.ttc", "/System/Library/Fonts/STHeiti Light.ttc"],
        "Windows": ["C:\\Windows\\Fonts\\simsun.ttc"],
    }.get(platform.system(), ["/usr/share/fonts/opentype/noto/NotoSansCJK-Regular.ttc"])

    _chinese_font = "Helvetica"
    for path in candidates:
        try:
            pdfmetrics.registerFont(TTFont("Chinese", path, subfontIndex=0))
            _chinese_font = "Chinese"
            break
        except Exception as e:
            logger.debug(f"加载字体失败: {path}, {e}")

    if _chinese_font == "Helvetica":
        logger.warning("无法加载中文字体，使用默认字体")
    return _chinese_font


class PdfExporter(Exporter):
    """A4 版面：标题、执行信息，以及每个组件一节"""

    format = "pdf"

    def render(self, document: ExportDocument) -> bytes:
        font = _register_chinese_font()
        buffer = BytesIO()
        doc = SimpleDocTemplate(
            buffer,
            pagesize=A4,
            rightMargin=0.75 * inch,
            leftMargin=0.75 * inch,
            topMargin=1 * inch,
            bottomMargin=0.75 * inch,
            title=document.title,
        )

        styles = getSampleStyleSheet()
        title_style = ParagraphStyle(
            'ReportTitle',
            parent=styles['Heading1'],
            fontName=font,
            fontSize=18,
            textColor=colors.HexColor('#1f2937'),
            spaceAfter=12,
            alignment=TA_CENTER
        )
        meta_style = ParagraphStyle(
            'MetaText',
            parent=styles['Normal'],
            fontName=font,
            fontSize=10,
            textColor=colors.HexColor('#6b7280'),
            alignment=TA_CENTER
        )
        section_style = ParagraphStyle(
            'SectionTitle',
            parent=styles['Heading2'],
            fontName=font,
            fontSize=14,
            textColor=colors.HexColor('#374151'),
            spaceAfter=8
        )
        body_style = ParagraphStyle(
            'BodyText',
            parent=styles['Normal'],
            fontName=font,
            fontSize=11,
            textColor=colors.HexColor('#1f2937'),
            spaceAfter=8,
            leading=16
        )

        story = [
            Paragraph(escape(document.title), title_style),
            Spacer(1, 0.1 * inch),
            Paragraph(escape(f"Execution: {document.execution_no}  Executed: {document.executed_at_text}"), meta_style),
            Spacer(1, 0.3 * inch),
        ]

        for component in document.components:
            story.append(Paragraph(escape(_section_title(component)), section_style))

            if component.type == "text":
                for para in component.payload.get("content", "").split("\n"):
                    if para.strip():
                        story.append(Paragraph(escape(para), body_style))
            else:
                headers, rows = component_table(component)
                story.append(self.build_table(doc.width, font, headers, rows))

            story.append(Spacer(1, 0.3 * inch))

        doc.build(story)
        pdf_bytes = buffer.getvalue()
        buffer.close()
        return pdf_bytes

    @staticmethod
    def build_table(width: float, font: str, headers: List[str], rows: List[List[Any]]) -> Table:
        """
        组件数据表格

        单元格用 Paragraph 包装，长文本自动换行而不截断；表格跨页时重复表头
        """
        header_style = ParagraphStyle(
            'TableHeader',
            fontName=font,
            fontSize=10,
            leading=13,
            textColor=colors.whitesmoke,
            alignment=TA_CENTER
        )
        cell_style = ParagraphStyle(
            'TableCell',
            fontName=font,
            fontSize=9,
            leading=12,
            textColor=colors.HexColor('#1f2937')
        )

        table_data = [[Paragraph(escape(str(h)), header_style) for h in (headers or [""])]]
        for row in rows:
            table_data.append([Paragraph(escape(_cell_text(value)), cell_style) for value in row])

        num_cols = max(len(headers), 1)
        table = Table(table_data, colWidths=[width / num_cols] * num_cols, repeatRows=1)
        table.setStyle(TableStyle([
            # 表头样式
            ('BACKGROUND', (0, 0), (-1, 0), colors.HexColor('#3b82f6')),
            ('TEXTCOLOR', (0, 0), (-1, 0), colors.whitesmoke),
            ('ALIGN', (0, 0), (-1, 0), 'CENTER'),
            ('FONTNAME', (0, 0), (-1, -1), font),
            ('FONTSIZE', (0, 0), (-1, 0), 10),
            ('BOTTOMPADDING', (0, 0), (-1, 0), 8),
            ('TOPPADDING', (0, 0), (-1, 0), 8),

            # 数据行样式
            ('TEXTCOLOR', (0, 1), (-1, -1), colors.HexColor('#1f2937')),
            ('ALIGN', (0, 1), (-1, -1), 'LEFT'),
            ('FONTSIZE', (0, 1), (-1, -1), 9),
            ('TOPPADDING', (0, 1), (-1, -1), 6),
            ('BOTTOMPADDING', (0, 1), (-1, -1), 6),

            ('GRID', (0, 0), (-1, -1), 0.5, colors.HexColor('#e5e7eb')),
            ('ROWBACKGROUNDS', (0, 1), (-1, -1), [colors.white, colors.HexColor('#f9fafb')])
        ]))
        return table


_INVALID_SHEET_CHARS = set('[]:*?/\\')


def _sheet_title(component: RenderedComponent, used: set) -> str:
    """Excel 工作表名最长31个字符且不能包含 []:*?/\\"""
    raw = f"{component.order_index + 1}. {component.name}"
    base = "".join("_" if ch in _INVALID_SHEET_CHARS else ch for ch in raw)[:31]
    title = base
    suffix = 2
    while title in used or title == "Summary":
        tail = f" ({suffix})"
        title = base[:31 - len(tail)] + tail
        suffix += 1
    used.add(title)
    return title


class ExcelExporter(Exporter):
    """Summary 工作表加上每个 table / chart / kpi 组件一个工作表"""

    format = "excel"

    header_font = Font(name='Arial', size=11, bold=True, color='FFFFFF')
    header_fill = PatternFill(start_color='3B82F6', end_color='3B82F6', fill_type='solid')
    header_alignment = Alignment(horizontal='center', vertical='center')
    data_font = Font(name='Arial', size=10)
    data_alignment = Alignment(horizontal='left', vertical='center')
    stripe_fill = PatternFill(start_color='F9FAFB', end_color='F9FAFB', fill_type='solid')
    border = Border(
        left=Side(style='thin', color='E5E7EB'),
        right=Side(style='thin', color='E5E7EB'),
        top=Side(style='thin', color='E5E7EB'),
        bottom=Side(style='thin', color='E5E7EB')
    )

    def render(self, document: ExportDocument) -> bytes:
        wb = Workbook()
        ws_summary = wb.active
        ws_summary.title = "Summary"
        self._write_summary(ws_summary, document)

        used = {"Summary"}
        for component in document.components:
            if component.type not in SHEET_COMPONENT_TYPES:
                continue
            ws = wb.create_sheet(_sheet_title(component, used))
            headers, rows = component_table(component)
            self._write_table(ws, headers, rows)

        buffer = BytesIO()
        wb.save(buffer)
        excel_bytes = buffer.getvalue()
        buffer.close()
        return excel_bytes

    def _write_summary(self, ws, document: ExportDocument):
        title_cell = ws.cell(row=1, column=1, value="Report Summary")
        title_cell.font = Font(name='Arial', size=14, bold=True, color='1F2937')
        ws.merge_cells('A1:B1')

        label_fill = PatternFill(start_color='F3F4F6', end_color='F3F4F6', fill_type='solid')
        for row_idx, (label, value) in enumerate(document.summary_items(), 3):
            label_cell = ws.cell(row=row_idx, column=1, value=label)
            label_cell.font = Font(name='Arial', size=10, bold=True)
            label_cell.fill = label_fill
            ws.cell(row=row_idx, column=2, value=value).font = Font(name='Arial', size=10)

        # 文字组件写在 Summary 末尾
        row_idx = len(document.summary_items()) + 4
        for component in document.components:
            if component.type != "text":
                continue
            ws.cell(row=row_idx, column=1, value=component.name).font = Font(name='Arial', size=11, bold=True)
            text_cell = ws.cell(row=row_idx, column=2, value=component.payload.get("content", ""))
            text_cell.alignment = Alignment(horizontal='left', vertical='top', wrap_text=True)
            row_idx += 1

        ws.column_dimensions['A'].width = 20
        ws.column_dimensions['B'].width = 60

    def _write_table(self, ws, headers: List[str], rows: List[List[Any]]):
        for col_idx, header in enumerate(headers, 1):
            cell = ws.cell(row=1, column=col_idx, value=header)
            cell.font = self.header_font
            cell.fill = self.header_fill
            cell.alignment = self.header_alignment
            cell.border = self.border

        for row_idx, row in enumerate(rows, 2):
            for col_idx, value in enumerate(row, 1):
                if isinstance(value, (list, dict)):
                    value = _cell_text(value)
                cell = ws.cell(row=row_idx, column=col_idx, value=value)
                cell.font = self.data_font
                cell.alignment = self.data_alignment
                cell.border = self.border
                if row_idx % 2 == 0:
                    cell.fill = self.stripe_fill

        # 自动调整列宽（只检查前100行）
        for col_idx, header in enumerate(headers, 1):
            max_length = len(str(header))
            for row in rows[:100]:
                if col_idx <= len(row):
                    max_length = max(max_length, len(_cell_text(row[col_idx - 1])))
            ws.column_dimensions[get_column_letter(col_idx)].width = min(max_length + 2, 50)

        ws.freeze_panes = 'A2'


class ExportFile:
    """导出结果"""

    def __init__(self, content: bytes, media_type: str, filename: str):
        self.content = content
        self.media_type = media_type
        self.filename = filename


class ExportService:
    """导出服务类"""

    def __init__(self):
        self.exporters: Dict[str, Exporter] = {
            "pdf": PdfExporter(),
            "excel": ExcelExporter(),
            "csv": CsvExporter(),
            "json": JsonExporter(),
        }

    async def export(
        self,
        execution: Execution,
        format: str,
        report: Optional[ReportDefinition] = None
    ) -> ExportFile:
        """
        导出执行结果

        Args:
            execution: 执行记录（必须为 completed）
            format: pdf / excel / csv / json
            report: 所属报表，用于标题和编号

        Returns:
            ExportFile对象

        Raises:
            ValidationError: 导出格式不支持
            InvalidStateError: 执行未完成（pending / running / failed / cancelled）
        """
        if format not in EXPORT_FORMATS:
            raise ValidationError(
                f"不支持的导出格式: {format}。支持: {', '.join(EXPORT_FORMATS)}",
                field="format"
            )
        if execution.status != "completed":
            raise InvalidStateError(
                f"只能导出已完成的执行: execution_no={execution.execution_no}, status={execution.status}",
                {"execution_id": execution.id, "status": execution.status}
            )

        document = ExportDocument.from_execution(execution, report)
        logger.info(
            f"开始导出: execution_no={execution.execution_no}, format={format}, "
            f"components={len(document.components)}"
        )

        try:
            content = self.exporters[format].render(document)
        except Exception as e:
            logger.error(
                f"{format}导出失败",
                extra={"execution_no": execution.execution_no, "error": str(e)},
                exc_info=True
            )
            raise

        logger.info(f"导出完成: execution_no={execution.execution_no}, format={format}, size={len(content)} bytes")
        return ExportFile(
            content=content,
            media_type=MEDIA_TYPES[format],
            filename=f"{execution.execution_no}.{EXTENSIONS[format]}",
        )


# 全局导出服务实例
_export_service = None


def get_export_service() -> ExportService:
    """
    获取全局导出服务实例

    Returns:
        ExportService实例
    """
    global _export_service

    if _export_service is None:
        _export_service = ExportService()

    return _export_service
