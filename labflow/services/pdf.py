# labflow/services/pdf.py

"""
성적서(CoA) PDF 렌더링 협력자입니다.

기본 구현은 reportlab canvas로 A4 한 장(넘치면 여러 장)에 성적서 헤더,
시험 결과 표, 서명란을 그립니다. 템플릿 코드는 제목과 바닥글에 표시됩니다.
"""

import logging
from io import BytesIO
from typing import Any, Dict, List

from reportlab.lib import colors
from reportlab.lib.pagesizes import A4
from reportlab.lib.units import mm
from reportlab.pdfgen import canvas

from labflow.core.exceptions import RenderFailed

logger = logging.getLogger(__name__)

TEMPLATE_TITLES = {
    "COA_PCR_MANDIRI": "Certificate of Analysis (PCR - Individual)",
    "COA_PCR_KERJASAMA": "Certificate of Analysis (PCR - Institution)",
    "COA_WGS": "Certificate of Analysis (Whole Genome Sequencing)",
}


def _text(value: Any) -> str:
    return "-" if value is None or value == "" else str(value)


class ReportlabRenderer:
    left_margin = 18 * mm
    right_margin = 18 * mm
    bottom_margin = 25 * mm

    def render(self, template_code: str, data: Dict[str, Any]) -> bytes:
        """
        data 키: report_no, sample_code, client_reference, generated_at, finalized_at,
        items(list of dict), signatures(list of dict).
        """
        try:
            return self._draw(template_code, data)
        except RenderFailed:
            raise
        except Exception as e:
            logger.exception("PDF 렌더링 실패: template=%s", template_code)
            raise RenderFailed(f"Failed to render template {template_code}: {e}") from e

    def _draw(self, template_code: str, data: Dict[str, Any]) -> bytes:
        buf = BytesIO()
        c = canvas.Canvas(buf, pagesize=A4)
        width, height = A4

        col_param = self.left_margin + 2 * mm
        col_method = self.left_margin + 55 * mm
        col_result = self.left_margin + 105 * mm
        col_unit = self.left_margin + 140 * mm

        def start_page() -> float:
            y = height - 20 * mm
            c.setFillColor(colors.HexColor("#0060B6"))
            c.setFont("Helvetica-Bold", 13)
            c.drawString(self.left_margin, y, TEMPLATE_TITLES.get(template_code, "Certificate of Analysis"))
            y -= 8 * mm
            c.setFillColor(colors.black)
            c.setFont("Helvetica", 9)
            c.drawString(self.left_margin, y, f"Report No: {_text(data.get('report_no'))}")
            c.drawRightString(width - self.right_margin, y, f"Sample: {_text(data.get('sample_code'))}")
            y -= 5 * mm
            c.drawString(self.left_margin, y, f"Client: {_text(data.get('client_reference'))}")
            c.drawRightString(width - self.right_margin, y, f"Issued: {_text(data.get('finalized_at'))}")
            y -= 8 * mm

            c.setFillColor(colors.HexColor("#F3F4F6"))
            c.rect(self.left_margin, y - 2 * mm, width - self.left_margin - self.right_margin, 7 * mm, stroke=0, fill=1)
            c.setFillColor(colors.black)
            c.setFont("Helvetica-Bold", 8)
            c.drawString(col_param, y, "Parameter")
            c.drawString(col_method, y, "Method")
            c.drawString(col_result, y, "Result")
            c.drawString(col_unit, y, "Unit")
            return y - 7 * mm

        def draw_footer(page_no: int) -> None:
            c.setFont("Helvetica", 7)
            c.setFillColor(colors.HexColor("#4B5563"))
            c.drawString(self.left_margin, self.bottom_margin - 10 * mm, f"Template: {template_code}")
            c.drawRightString(width - self.right_margin, self.bottom_margin - 10 * mm, f"Page {page_no}")

        page_no = 1
        y = start_page()
        items: List[Dict[str, Any]] = data.get("items") or []
        for item in items:
            if y < self.bottom_margin + 30 * mm:
                draw_footer(page_no)
                c.showPage()
                page_no += 1
                y = start_page()
            c.setFont("Helvetica", 8)
            c.setFillColor(colors.black)
            c.drawString(col_param, y, _text(item.get("parameter_name"))[:40])
            c.drawString(col_method, y, _text(item.get("method_name"))[:35])
            c.drawString(col_result, y, _text(item.get("result_value"))[:25])
            c.drawString(col_unit, y, _text(item.get("unit_label"))[:20])
            y -= 6 * mm

        # 서명란
        y -= 6 * mm
        c.setFont("Helvetica-Bold", 8)
        for signature in data.get("signatures") or []:
            c.drawString(self.left_margin, y, f"{signature.get('role_code')}:")
            c.setFont("Helvetica", 8)
            c.drawString(self.left_margin + 20 * mm, y, f"{_text(signature.get('signed_by'))} / {_text(signature.get('signed_at'))}")
            c.setFont("Helvetica-Bold", 8)
            y -= 6 * mm

        draw_footer(page_no)
        c.showPage()
        c.save()
        return buf.getvalue()


def get_renderer() -> ReportlabRenderer:
    return ReportlabRenderer()
