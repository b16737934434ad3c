"""
Civic Report PDF Generator
==========================
Renders the daily civic intelligence report, and stored narrative reports, as PDFs.

Sections:
- Header with report date and danger index
- Sentiment and threat metrics tables
- Dominant emotions, trending topics, figures and regions
- Key events
- Integrity footer carrying the SHA-256 hash of the report data
"""

import io
import json
import hashlib
from datetime import datetime
from typing import Dict, List, Any
from dataclasses import dataclass, asdict

from reportlab.lib import colors
from reportlab.lib.pagesizes import A4
from reportlab.lib.styles import getSampleStyleSheet, ParagraphStyle
from reportlab.lib.units import inch
from reportlab.lib.enums import TA_CENTER, TA_JUSTIFY
from reportlab.platypus import (
    SimpleDocTemplate, Paragraph, Spacer, Table, TableStyle, HRFlowable
)
from xml.sax.saxutils import escape


@dataclass
class ReportMetadata:
    """Report metadata with content hash."""
    report_id: str
    report_date: str
    generated_at: str
    header_text: str
    system: str = "CamerPulse Civic Intelligence"
    content_hash: str = ""

    def compute_hash(self, report: Dict[str, Any]) -> str:
        payload = {k: v for k, v in asdict(self).items() if k != 'content_hash'}
        content = json.dumps(payload, sort_keys=True).encode() + json.dumps(report, sort_keys=True, default=str).encode()
        return hashlib.sha256(content).hexdigest()


class CamerPulseColors:
    """Flag palette."""
    GREEN = colors.HexColor('#007a5e')
    RED = colors.HexColor('#ce1126')
    YELLOW = colors.HexColor('#fcd116')
    ORANGE = colors.HexColor('#ea580c')
    AMBER = colors.HexColor('#d97706')
    NEUTRAL = colors.HexColor('#6b7280')
    LIGHT = colors.HexColor('#f3f4f6')
    DARK = colors.HexColor('#111827')


LEVEL_COLORS = {
    'critical': CamerPulseColors.RED,
    'high': CamerPulseColors.ORANGE,
    'medium': CamerPulseColors.AMBER,
    'low': CamerPulseColors.GREEN,
}


class CivicReportGenerator:

    def __init__(self):
        self.styles = getSampleStyleSheet()
        self._setup_custom_styles()

    def _setup_custom_styles(self):
        self.styles.add(ParagraphStyle(
            name='ReportTitle',
            parent=self.styles['Heading1'],
            fontSize=20,
            textColor=CamerPulseColors.GREEN,
            spaceAfter=12,
            alignment=TA_CENTER
        ))

        self.styles.add(ParagraphStyle(
            name='ReportSubtitle',
            parent=self.styles['Normal'],
            fontSize=11,
            textColor=CamerPulseColors.NEUTRAL,
            spaceAfter=20,
            alignment=TA_CENTER
        ))

        self.styles.add(ParagraphStyle(
            name='SectionHeader',
            parent=self.styles['Heading2'],
            fontSize=13,
            textColor=CamerPulseColors.GREEN,
            spaceBefore=18,
            spaceAfter=10,
        ))

        self.styles.add(ParagraphStyle(
            name='CPBodyText',
            parent=self.styles['Normal'],
            fontSize=9,
            textColor=CamerPulseColors.DARK,
            spaceAfter=6,
            alignment=TA_JUSTIFY
        ))

        self.styles.add(ParagraphStyle(
            name='DangerValue',
            parent=self.styles['Normal'],
            fontSize=28,
            leading=34,
            alignment=TA_CENTER,
            fontName='Helvetica-Bold'
        ))

        self.styles.add(ParagraphStyle(
            name='CodeStyle',
            parent=self.styles['Normal'],
            fontSize=7,
            fontName='Courier',
            textColor=CamerPulseColors.NEUTRAL,
            backColor=CamerPulseColors.LIGHT,
            borderPadding=4
        ))

    def generate_report(self, report: Dict[str, Any], header_text: str = "CamerPulse Daily Civic Intelligence Report") -> bytes:
        """
        Generate the PDF for one daily report.

        Args:
            report: Output of daily_report.build_daily_report
            header_text: Title printed at the top of the first page

        Returns:
            PDF content as bytes
        """
        buffer = io.BytesIO()
        doc = SimpleDocTemplate(
            buffer,
            pagesize=A4,
            rightMargin=0.75*inch,
            leftMargin=0.75*inch,
            topMargin=0.75*inch,
            bottomMargin=0.75*inch,
            title=header_text
        )

        metadata = ReportMetadata(
            report_id=f"CPR-{report['report_date'].replace('-', '')}",
            report_date=report['report_date'],
            generated_at=report.get('generated_at') or datetime.now().isoformat(),
            header_text=header_text
        )
        metadata.content_hash = metadata.compute_hash(report)

        story = []
        story.extend(self._build_header(metadata, report))
        story.extend(self._build_metrics_table(report))
        story.extend(self._build_emotions(report))
        story.extend(self._build_trends(report))
        story.extend(self._build_figures(report))
        story.extend(self._build_regions(report))
        story.extend(self._build_key_events(report))
        story.extend(self._build_integrity_footer(metadata))

        doc.build(story)
        pdf_bytes = buffer.getvalue()
        buffer.close()
        return pdf_bytes

    def _build_header(self, metadata: ReportMetadata, report: Dict) -> List:
        elements = []
        elements.append(Paragraph(escape(metadata.header_text), self.styles['ReportTitle']))
        elements.append(Paragraph(
            f"Report date: {metadata.report_date} | {report['total_posts']} posts analyzed",
            self.styles['ReportSubtitle']
        ))

        level = report['threat_level']
        color = LEVEL_COLORS.get(level, CamerPulseColors.NEUTRAL)
        elements.append(Paragraph(
            f"<font color='#{color.hexval()[2:]}'>{report['danger_index']}/100</font>",
            self.styles['DangerValue']
        ))
        elements.append(Paragraph(f"Danger index ({level.upper()})", self.styles['ReportSubtitle']))
        elements.append(HRFlowable(width="100%", thickness=1, color=CamerPulseColors.LIGHT))
        return elements

    def _table(self, rows: List[List[Any]], col_widths: List[float]) -> Table:
        table = Table(rows, colWidths=col_widths)
        table.setStyle(TableStyle([
            ('BACKGROUND', (0, 0), (-1, 0), CamerPulseColors.LIGHT),
            ('TEXTCOLOR', (0, 0), (-1, 0), CamerPulseColors.NEUTRAL),
            ('TEXTCOLOR', (0, 1), (-1, -1), CamerPulseColors.DARK),
            ('FONTNAME', (0, 0), (-1, 0), 'Helvetica-Bold'),
            ('FONTSIZE', (0, 0), (-1, -1), 9),
            ('BOTTOMPADDING', (0, 0), (-1, 0), 6),
            ('GRID', (0, 0), (-1, -1), 0.5, CamerPulseColors.LIGHT),
            ('VALIGN', (0, 0), (-1, -1), 'TOP'),
        ]))
        return table

    def _build_metrics_table(self, report: Dict) -> List:
        breakdown = report['sentiment_breakdown']
        threats = report['threat_counts']
        rows = [
            ['Positive', 'Negative', 'Neutral', 'Critical', 'High', 'Medium'],
            [
                f"{breakdown['positive']}%",
                f"{breakdown['negative']}%",
                f"{breakdown['neutral']}%",
                str(threats.get('critical', 0)),
                str(threats.get('high', 0)),
                str(threats.get('medium', 0)),
            ]
        ]
        return [
            Paragraph("SENTIMENT AND THREATS", self.styles['SectionHeader']),
            self._table(rows, [1.1*inch]*6),
        ]

    def _build_emotions(self, report: Dict) -> List:
        if not report['top_emotions']:
            return []
        rows = [['Emotion', 'Posts', 'Share']]
        rows.extend([e['emotion'], str(e['count']), f"{e['percentage']}%"] for e in report['top_emotions'])
        return [Paragraph("DOMINANT EMOTIONS", self.styles['SectionHeader']), self._table(rows, [2.5*inch, 1.5*inch, 1.5*inch])]

    def _build_trends(self, report: Dict) -> List:
        if not report['trending_topics']:
            return []
        rows = [['Topic', 'Volume', 'Sentiment']]
        rows.extend(
            [Paragraph(escape(str(t['topic'])), self.styles['CPBodyText']), str(t['volume']), f"{float(t['sentiment']):+.2f}"]
            for t in report['trending_topics']
        )
        return [Paragraph("TRENDING TOPICS", self.styles['SectionHeader']), self._table(rows, [3.5*inch, 1.25*inch, 1.25*inch])]

    def _build_figures(self, report: Dict) -> List:
        if not report['top_figures']:
            return []
        rows = [['Public figure', 'Mentions', 'Avg. sentiment']]
        rows.extend([f['name'], str(f['mentions']), f"{f['avg_sentiment']:+.2f}"] for f in report['top_figures'])
        return [Paragraph("MOST MENTIONED FIGURES", self.styles['SectionHeader']), self._table(rows, [3.5*inch, 1.25*inch, 1.25*inch])]

    def _build_regions(self, report: Dict) -> List:
        if not report['regions']:
            return []
        rows = [['Region', 'Mentions', 'Avg. sentiment', 'Alert']]
        rows.extend(
            [r['region'], str(r['mentions']), f"{r['avg_sentiment']:+.2f}", r['alert_level'].upper()]
            for r in report['regions']
        )
        table = self._table(rows, [2.25*inch, 1.25*inch, 1.25*inch, 1.25*inch])
        for i, r in enumerate(report['regions'], start=1):
            table.setStyle(TableStyle([
                ('TEXTCOLOR', (3, i), (3, i), LEVEL_COLORS.get(r['alert_level'], CamerPulseColors.NEUTRAL)),
            ]))
        return [Paragraph("REGIONAL OVERVIEW", self.styles['SectionHeader']), table]

    def _build_key_events(self, report: Dict) -> List:
        if not report['key_events']:
            return []
        elements = [Paragraph("KEY EVENTS", self.styles['SectionHeader'])]
        for event in report['key_events']:
            level = (event.get('threat_level') or '').upper()
            where = escape(event.get('region') or 'Unknown')
            elements.append(Paragraph(
                f"<b>[{level}]</b> {escape(event['content'])} <font color='#6b7280'>({where}, {escape(event.get('platform') or '')})</font>",
                self.styles['CPBodyText']
            ))
        return elements

    def _build_integrity_footer(self, metadata: ReportMetadata) -> List:
        elements = [Spacer(1, 20), HRFlowable(width="100%", thickness=1, color=CamerPulseColors.LIGHT), Spacer(1, 10)]
        elements.append(Paragraph(f"Report Hash (SHA-256): {metadata.content_hash}", self.styles['CodeStyle']))
        elements.append(Paragraph(f"Report ID: {metadata.report_id}", self.styles['CodeStyle']))
        elements.append(Paragraph(f"Generated: {metadata.generated_at} by {metadata.system}", self.styles['CodeStyle']))
        return elements

    def generate_narrative(self, report: Dict[str, Any]) -> bytes:
        """Render a stored narrative report; list sections are skipped when empty."""
        buffer = io.BytesIO()
        doc = SimpleDocTemplate(
            buffer,
            pagesize=A4,
            rightMargin=0.75*inch,
            leftMargin=0.75*inch,
            topMargin=0.75*inch,
            bottomMargin=0.75*inch,
            title=report['title']
        )

        metadata = ReportMetadata(
            report_id=report['id'],
            report_date=report['date'],
            generated_at=report.get('generated_at') or datetime.now().isoformat(),
            header_text=report['title']
        )
        metadata.content_hash = metadata.compute_hash(report)
        meta = report.get('metadata') or {}
        body = self.styles['CPBodyText']

        story = [
            Paragraph(escape(report['title']), self.styles['ReportTitle']),
            Paragraph(f"{report['date']} | {escape(report['type'])} report | {escape(str(report.get('tone')))} tone",
                      self.styles['ReportSubtitle']),
            HRFlowable(width="100%", thickness=1, color=CamerPulseColors.LIGHT),
            Paragraph("EXECUTIVE SUMMARY", self.styles['SectionHeader']),
            Paragraph(escape(report['summary']), body),
            Paragraph("ANALYSIS", self.styles['SectionHeader']),
        ]
        story.extend(
            Paragraph(escape(p.strip()), body)
            for p in (report.get('narrative') or '').split('\n\n') if p.strip()
        )

        sections = [
            ("KEY INSIGHTS", [escape(i) for i in report.get('key_insights') or []]),
            ("NOTABLE STATEMENTS", [f"<i>\"{escape(q)}\"</i>" for q in report.get('quotable_quotes') or []]),
            ("REGIONAL EMOTIONAL SHIFTS", [
                f"<b>{escape(str(s['region']))}</b>: {escape(str(s['shift']))} - {escape(str(s['analysis']))}"
                for s in meta.get('emotional_shifts') or []
            ]),
            ("CIVIC DANGER ASSESSMENT", [
                f"<b>{escape(str(d['location']))}</b> [{escape(str(d['level'])).upper()}] {escape(str(d['context']))}"
                for d in meta.get('danger_spikes') or []
            ]),
            ("POLITICAL MOMENTUM", [
                f"<b>{escape(str(p['party']))}</b>: {escape(str(p['trend']))} - {escape(str(p['analysis']))}"
                for p in meta.get('party_momentum') or []
            ]),
            ("TRENDING ISSUES", [
                f"<b>{escape(str(t['issue']))}</b> ({escape(str(t['volume']))}, {escape(str(t['sentiment']))}): "
                f"{escape(str(t['analysis']))}"
                for t in meta.get('trending_issues') or []
            ]),
        ]
        for title, items in sections:
            if items:
                story.append(Paragraph(title, self.styles['SectionHeader']))
                story.extend(Paragraph(f"• {item}", body) for item in items)

        story.extend(self._build_integrity_footer(metadata))

        doc.build(story)
        pdf_bytes = buffer.getvalue()
        buffer.close()
        return pdf_bytes
