"""PDF bridge inspection reports drawn on A4 pages with matplotlib."""

from __future__ import annotations

import os
import warnings
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from matplotlib.backends.backend_pdf import PdfPages
from matplotlib.figure import Figure
from matplotlib.font_manager import FontProperties
from matplotlib.ft2font import FT2Font
from matplotlib.lines import Line2D
from matplotlib.patches import Rectangle

from .database import Bridge, Defect, Report

LIBERATION_FALLBACK = "/usr/share/fonts/truetype/liberation/LiberationSans-Regular.ttf"
TTC_FONT_NAME = "wqy-microhei.ttc"

PAGE_WIDTH_MM = 210.0
PAGE_HEIGHT_MM = 297.0
_MM_PER_INCH = 25.4
_PT_PER_MM = 72.0 / _MM_PER_INCH

Color = Tuple[int, int, int]

DARK: Color = (33, 37, 41)
MUTED: Color = (108, 117, 125)
BODY: Color = (73, 80, 87)
FAINT: Color = (173, 181, 189)
LIGHT_FILL: Color = (248, 249, 250)
WHITE: Color = (255, 255, 255)
BORDER: Color = (222, 226, 230)
GREEN: Color = (40, 167, 69)
BLUE: Color = (13, 110, 253)
YELLOW: Color = (255, 193, 7)
ORANGE: Color = (253, 126, 20)
RED: Color = (220, 53, 69)

GRADES: Sequence[Tuple[str, str, Color]] = (
    ("优秀", "≥90分", GREEN),
    ("良好", "70-89分", BLUE),
    ("一般", "50-69分", YELLOW),
    ("较差", "30-49分", ORANGE),
    ("危险", "<30分", RED),
)

SUGGESTIONS: Sequence[str] = (
    "1. 对检测到的高危缺陷进行重点监测，记录发展趋势",
    "2. 制定针对性的维修计划，优先处理高危缺陷",
    "3. 加强桥梁日常巡查频率，及时发现新增缺陷",
    "4. 建立缺陷档案，跟踪缺陷发展历史",
    "5. 定期开展无人机智能检测，提高检测效率和覆盖率",
)


class ReportGenerationError(Exception):
    """Raised when a report cannot be produced."""


def health_score_color(score: float) -> Color:
    """RGB colour used to display a health score."""
    if score >= 90:
        return GREEN
    if score >= 70:
        return BLUE
    if score >= 50:
        return YELLOW
    if score >= 30:
        return ORANGE
    return RED


def assessment_for_score(score: float) -> str:
    """Overall assessment sentence for a health score."""
    if score >= 90:
        return "桥梁整体状况优秀，结构完好，无明显缺陷。建议按常规周期进行检测维护。"
    if score >= 70:
        return "桥梁整体状况良好，存在少量轻微缺陷。建议加强日常巡查，定期监测缺陷发展情况。"
    if score >= 50:
        return "桥梁整体状况一般，存在一定数量的缺陷。建议尽快安排专业检测，制定维修方案。"
    if score >= 30:
        return "桥梁整体状况较差，存在较多缺陷，部分为高危缺陷。建议立即开展详细检测，制定加固维修方案。"
    return "桥梁整体状况危险，存在大量高危缺陷，可能影响结构安全。建议立即采取临时加固措施，限制通行，尽快开展抢修。"


def select_high_risk(defects: Iterable[Defect]) -> List[Defect]:
    """Defects with confidence of at least 0.85 or area of at least 0.02."""
    return [d for d in defects if d.confidence >= 0.85 or d.area >= 0.02]


def group_by_type(defects: Iterable[Defect]) -> Dict[str, List[Defect]]:
    """Defects grouped by type, in order of each type's first appearance."""
    groups: Dict[str, List[Defect]] = {}
    for defect in defects:
        groups.setdefault(defect.defect_type, []).append(defect)
    return groups


def _date(value: Optional[datetime]) -> str:
    return value.strftime("%Y-%m-%d") if value is not None else "0001-01-01"


def _timestamp(value: Optional[datetime]) -> str:
    return value.strftime("%Y-%m-%d %H:%M:%S") if value is not None else "0001-01-01 00:00:00"


def count_by_date(defects: Iterable[Defect]) -> Dict[str, int]:
    """Number of defects per detection day, ordered by date."""
    counts: Dict[str, int] = {}
    for defect in defects:
        day = _date(defect.detected_at)
        counts[day] = counts.get(day, 0) + 1
    return dict(sorted(counts.items()))


def _rgb(color: Color) -> Tuple[float, float, float]:
    return (color[0] / 255, color[1] / 255, color[2] / 255)


class _Page:
    """One A4 page addressed in millimetres from the upper-left corner."""

    def __init__(self, font: Optional[FontProperties]) -> None:
        self.figure = Figure(
            figsize=(PAGE_WIDTH_MM / _MM_PER_INCH, PAGE_HEIGHT_MM / _MM_PER_INCH)
        )
        self.font = font

    def _fx(self, x: float) -> float:
        return x / PAGE_WIDTH_MM

    def _fy(self, y: float) -> float:
        return 1 - y / PAGE_HEIGHT_MM

    def font_at(self, size: float) -> dict:
        if self.font is None:
            return {"fontsize": size}
        props = self.font.copy()
        props.set_size(size)
        return {"fontproperties": props}

    def text(self, x: float, y: float, content: str, size: float, color: Color) -> None:
        self.figure.text(
            self._fx(x), self._fy(y), content, color=_rgb(color),
            va="top", ha="left", **self.font_at(size),
        )

    def rect(
        self,
        x: float,
        y: float,
        w: float,
        h: float,
        fill: Optional[Color] = None,
        edge: Optional[Color] = None,
        line_width: float = 0.1,
    ) -> None:
        self.figure.add_artist(
            Rectangle(
                (self._fx(x), self._fy(y + h)),
                w / PAGE_WIDTH_MM,
                h / PAGE_HEIGHT_MM,
                transform=self.figure.transFigure,
                facecolor=_rgb(fill) if fill else "none",
                edgecolor=_rgb(edge) if edge else "none",
                linewidth=line_width * _PT_PER_MM if edge else 0,
            )
        )

    def line(self, x1: float, y1: float, x2: float, y2: float,
             color: Color, line_width: float) -> None:
        self.figure.add_artist(
            Line2D(
                [self._fx(x1), self._fx(x2)], [self._fy(y1), self._fy(y2)],
                transform=self.figure.transFigure,
                color=_rgb(color), linewidth=line_width * _PT_PER_MM,
            )
        )

    def axes(self, x: float, y: float, w: float, h: float):
        return self.figure.add_axes(
            [self._fx(x), self._fy(y + h), w / PAGE_WIDTH_MM, h / PAGE_HEIGHT_MM]
        )


class ReportGenerator:
    """Builds a multi-section bridge inspection report as a PDF file."""

    def __init__(
        self,
        font_path: Optional[str] = None,
        fallback_font_path: str = LIBERATION_FALLBACK,
    ) -> None:
        self.font_path = font_path
        self.fallback_font_path = fallback_font_path
        self._font: Optional[FontProperties] = None
        self._pages: List[_Page] = []

    def generate_bridge_inspection_report(
        self,
        report: Report,
        bridge: Bridge,
        defects: Sequence[Defect],
        output_path: str,
    ) -> int:
        """Write the report to ``output_path`` and return its page count."""
        self._pages = []
        try:
            self._font = self._load_font()
        except ReportGenerationError as exc:
            raise ReportGenerationError(f"添加中文字体失败: {exc}") from exc

        sections: Sequence[Tuple[str, Callable[[], None]]] = (
            ("生成封面失败", lambda: self._cover_page(report, bridge)),
            ("生成桥梁信息失败", lambda: self._bridge_info(bridge)),
            ("生成检测概览失败", lambda: self._detection_overview(report)),
            ("生成统计分析失败", lambda: self._statistics(defects)),
            ("生成高危缺陷列表失败", lambda: self._high_risk_defects(defects)),
            ("生成缺陷详情失败", lambda: self._defect_details(defects)),
            ("生成结论失败", lambda: self._conclusion(report)),
        )
        for message, build in sections:
            try:
                build()
            except (ValueError, RuntimeError, OSError) as exc:
                raise ReportGenerationError(f"{message}: {exc}") from exc

        try:
            with warnings.catch_warnings():
                warnings.filterwarnings("ignore", message=r"Glyph .* missing")
                with PdfPages(output_path) as pdf:
                    for page in self._pages:
                        pdf.savefig(page.figure)
        except (OSError, ValueError, RuntimeError) as exc:
            raise ReportGenerationError(f"保存PDF文件失败: {exc}") from exc
        return len(self._pages)

    # -- fonts -------------------------------------------------------------

    @staticmethod
    def _try_font(path: str) -> FontProperties:
        FT2Font(path)
        return FontProperties(fname=path)

    def _load_font(self) -> Optional[FontProperties]:
        if self.font_path is None:
            return None
        fallback = self.fallback_font_path
        ttc_path = os.path.join(os.path.dirname(self.font_path), TTC_FONT_NAME)
        font_errors = (OSError, RuntimeError, ValueError)
        if os.path.isfile(ttc_path):
            try:
                with open(ttc_path, "rb") as handle:
                    data = handle.read()
            except OSError as exc:
                raise ReportGenerationError(f"读取TTC字体文件失败: {exc}") from exc
            if len(data) < 12:
                raise ReportGenerationError("TTC文件格式无效")
            try:
                return self._try_font(ttc_path)
            except font_errors as exc:
                try:
                    return self._try_font(fallback)
                except font_errors as exc2:
                    raise ReportGenerationError(
                        f"加载字体失败: TTC错误={exc}, Fallback错误={exc2}"
                    ) from exc2
        if not os.path.exists(self.font_path):
            try:
                return self._try_font(fallback)
            except font_errors as exc:
                raise ReportGenerationError(
                    f"字体文件不存在且fallback失败: {self.font_path}, {exc}"
                ) from exc
        try:
            return self._try_font(self.font_path)
        except font_errors as exc:
            try:
                return self._try_font(fallback)
            except font_errors as exc2:
                raise ReportGenerationError(
                    f"加载字体文件失败: 原始错误={exc}, Fallback错误={exc2}"
                ) from exc2

    # -- layout helpers ----------------------------------------------------

    def _add_page(self) -> _Page:
        page = _Page(self._font)
        self._pages.append(page)
        return page

    @staticmethod
    def _section_title(page: _Page, title: str) -> None:
        page.rect(20, 40, 170, 12, fill=LIGHT_FILL)
        page.text(22, 45, title, 16, DARK)

    # -- sections ----------------------------------------------------------

    def _cover_page(self, report: Report, bridge: Bridge) -> None:
        page = self._add_page()
        page.text(20, 80, report.report_name, 28, DARK)
        page.text(20, 110, "桥梁检测报表", 16, MUTED)
        page.line(50, 125, 160, 125, (200, 200, 200), 0.5)

        info = (
            ("桥梁名称", bridge.bridge_name),
            ("桥梁编号", bridge.bridge_code),
            ("检测时间", f"{_date(report.start_time)} 至 {_date(report.end_time)}"),
            ("生成时间", _timestamp(report.created_at)),
            ("健康度评分", f"{report.health_score:.2f} 分"),
        )
        y = 145.0
        for label, value in info:
            page.text(50, y, label + ": ", 12, MUTED)
            page.text(90, y, value, 12, DARK)
            y += 10.0

        page.text(20, 260, "桥梁缺陷检测系统", 10, FAINT)
        page.text(20, 270, "Bridge Defect Detection System", 10, FAINT)

    def _bridge_info(self, bridge: Bridge) -> None:
        page = self._add_page()
        self._section_title(page, "1. 桥梁基本信息")
        rows = (
            ("桥梁名称", bridge.bridge_name),
            ("桥梁编号", bridge.bridge_code),
            ("桥梁位置", bridge.address),
            ("桥梁类型", bridge.bridge_type),
            ("建造年份", f"{bridge.build_year} 年"),
            ("桥梁长度", f"{bridge.length:.2f} 米"),
            ("桥梁宽度", f"{bridge.width:.2f} 米"),
            ("经度", f"{bridge.longitude:.6f}"),
            ("纬度", f"{bridge.latitude:.6f}"),
            ("桥梁状态", bridge.status),
        )
        y = 60.0
        for label, value in rows:
            page.rect(20, y, 60, 8, fill=LIGHT_FILL)
            page.text(22, y + 2, label, 11, DARK)
            page.rect(80, y, 110, 8, fill=WHITE)
            page.text(82, y + 2, value, 11, DARK)
            page.rect(20, y, 60, 8, edge=BORDER)
            page.rect(80, y, 110, 8, edge=BORDER)
            y += 8

        if bridge.remark:
            page.text(20, y + 5, "备注: " + bridge.remark, 10, MUTED)

    def _detection_overview(self, report: Report) -> None:
        page = self._add_page()
        self._section_title(page, "2. 检测概览")
        stats = (
            ("检测时间范围",
             f"{_date(report.start_time)} 至 {_date(report.end_time)}", MUTED),
            ("缺陷总数", f"{report.defect_count} 个", BLUE),
            ("高危缺陷数量", f"{report.high_risk_count} 个", RED),
            ("健康度评分", f"{report.health_score:.2f} 分",
             health_score_color(report.health_score)),
        )
        y = 60.0
        for position, (label, value, color) in enumerate(stats):
            card_x = 20.0 if position % 2 == 0 else 110.0
            if position % 2 == 0 and position > 0:
                y += 23
            page.rect(card_x, y, 85, 20, fill=LIGHT_FILL)
            page.text(card_x + 5, y + 5, label, 9, MUTED)
            page.text(card_x + 5, y + 12, value, 14, color)

        y += 30
        page.text(20, y, "健康度评级标准：", 10, MUTED)
        y += 8
        for grade, span, color in GRADES:
            page.text(25, y, grade, 9, color)
            page.text(50, y, span, 9, MUTED)
            y += 6

    def _statistics(self, defects: Sequence[Defect]) -> None:
        page = self._add_page()
        self._section_title(page, "3. 统计分析")
        page.text(20, 60, "3.1 缺陷类型分布", 12, DARK)

        type_counts = {kind: len(items) for kind, items in group_by_type(defects).items()}
        y = 70.0
        if type_counts:
            self._pie_chart(page, type_counts, 40, y, 130, 75)
            y += 80

        y += 10
        page.text(20, y, "3.2 缺陷趋势分析", 12, DARK)
        y += 10

        date_counts = count_by_date(defects)
        if date_counts:
            self._line_chart(page, date_counts, 30, y, 150, min(90.0, 285.0 - y))

    def _pie_chart(self, page: _Page, data: Dict[str, int],
                   x: float, y: float, w: float, h: float) -> None:
        ax = page.axes(x, y, w, h)
        labels = [f"{label} ({count})" for label, count in data.items()]
        textprops = page.font_at(8)
        if "fontsize" in textprops:
            textprops = {"fontsize": textprops["fontsize"]}
        ax.pie(list(data.values()), labels=labels, textprops=textprops)
        ax.set_aspect("equal")

    def _line_chart(self, page: _Page, data: Dict[str, int],
                    x: float, y: float, w: float, h: float) -> None:
        points = []
        for day, count in data.items():
            try:
                points.append((datetime.strptime(day, "%Y-%m-%d"), count))
            except ValueError:
                continue
        points.sort()
        ax = page.axes(x, y, w, h)
        ax.set_facecolor("white")
        ax.plot(
            [p[0] for p in points], [float(p[1]) for p in points],
            color=_rgb(BLUE), linewidth=2, label="缺陷数量",
        )
        for label in (*ax.get_xticklabels(), *ax.get_yticklabels()):
            label.set_fontsize(10)
        ax.tick_params(axis="x", labelrotation=30)

    def _high_risk_defects(self, defects: Sequence[Defect]) -> None:
        page = self._add_page()
        self._section_title(page, "4. 高危缺陷列表")
        high_risk = select_high_risk(defects)
        if not high_risk:
            page.text(20, 60, "暂无高危缺陷", 11, MUTED)
            return

        y = 60.0
        page.rect(20, y, 170, 8, fill=DARK)
        headers = (("缺陷类型", 22), ("位置", 50), ("面积(㎡)", 100),
                   ("置信度", 125), ("检测时间", 150))
        for text, hx in headers:
            page.text(hx, y + 2, text, 10, WHITE)
        y += 8

        for position, defect in enumerate(high_risk):
            if position % 2 == 1:
                page.rect(20, y, 170, 7, fill=LIGHT_FILL)
            page.text(22, y + 2, defect.defect_type, 9, DARK)
            page.text(50, y + 2, defect.bbox, 9, DARK)
            page.text(100, y + 2, f"{defect.area:.4f}", 9, DARK)
            if defect.confidence >= 0.95:
                color = RED
            elif defect.confidence >= 0.90:
                color = ORANGE
            else:
                color = YELLOW
            page.text(125, y + 2, f"{defect.confidence * 100:.2f}%", 9, color)
            page.text(150, y + 2, _date(defect.detected_at), 9, DARK)
            page.rect(20, y, 170, 7, edge=BORDER)
            y += 7

    def _defect_details(self, defects: Sequence[Defect]) -> None:
        page = self._add_page()
        self._section_title(page, "5. 缺陷详细信息")
        y = 60.0
        for type_index, (defect_type, items) in enumerate(
            group_by_type(defects).items(), start=1
        ):
            if y > 250:
                page = self._add_page()
                y = 40.0
            page.text(20, y, f"5.{type_index} {defect_type} (共{len(items)}个)", 11, DARK)
            y += 10
            for number, defect in enumerate(items, start=1):
                if y > 270:
                    page = self._add_page()
                    y = 40.0
                text = (
                    f"{number}. 边界框:{defect.bbox} 面积:{defect.area:.4f}㎡ "
                    f"置信度:{defect.confidence * 100:.2f}% "
                    f"检测时间:{_date(defect.detected_at)}"
                )
                page.text(25, y, text, 9, BODY)
                y += 7
            y += 5

    def _conclusion(self, report: Report) -> None:
        page = self._add_page()
        self._section_title(page, "6. 结论与建议")
        page.text(20, 60, "6.1 整体评估", 11, DARK)
        y = 70.0
        page.text(20, y, assessment_for_score(report.health_score), 10, BODY)

        y += 20
        page.text(20, y, "6.2 维护建议", 11, DARK)
        y += 10
        for suggestion in SUGGESTIONS:
            page.text(20, y, suggestion, 10, BODY)
            y += 8

        y += 15
        page.text(20, y, "--- 报告结束 ---", 9, FAINT)