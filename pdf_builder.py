from xml.sax.saxutils import escape

from reportlab.lib import colors
from reportlab.lib.pagesizes import A4
from reportlab.lib.styles import ParagraphStyle, getSampleStyleSheet
from reportlab.lib.units import inch
from reportlab.platypus import Paragraph, SimpleDocTemplate, Spacer, Table, TableStyle

from money import format_money

TITLES = {'invoice': 'INVOICE', 'quote': 'QUOTE'}


class DocumentPDF:
    """
    Printable invoice or quote.

    Works from the serialized document (see documents.serialize_invoice /
    serialize_quote) and the serialized company, and only displays the totals
    already computed there.
    """

    def __init__(self, document, company, kind='invoice'):
        if kind not in TITLES:
            raise ValueError(f"Unknown document kind: {kind}")
        self.document = document
        self.kind = kind
        # Ensure all company values are strings (handle None from DB)
        self.company = {k: ('' if v is None else v) for k, v in company.items()}
        self.currency = self.company.get('currency') or 'EUR'
        self.font_name = 'Helvetica'
        self.bold_font_name = 'Helvetica-Bold'

    @property
    def number(self):
        return self.document['invoice_number' if self.kind == 'invoice' else 'quote_number']

    def money(self, value):
        return format_money(value, self.currency)

    def generate(self, target):
        """Write the PDF to a filename or a binary file-like object."""
        doc = SimpleDocTemplate(target, pagesize=A4, rightMargin=40, leftMargin=40, topMargin=40, bottomMargin=40,
                                title=f"{TITLES[self.kind].title()} {self.number}")
        styles = getSampleStyleSheet()
        normal_style = ParagraphStyle('Normal_Custom', parent=styles['Normal'], fontName=self.font_name, fontSize=10, leading=14)
        bold_style = ParagraphStyle('Bold_Custom', parent=normal_style, fontName=self.bold_font_name)
        white_bold_style = ParagraphStyle('WhiteBold_Custom', parent=bold_style, textColor=colors.white)
        muted_style = ParagraphStyle('Muted_Custom', parent=normal_style, textColor=colors.gray)
        title_style = ParagraphStyle('Title_Custom', parent=styles['Heading1'], fontName=self.bold_font_name,
                                     fontSize=24, spaceAfter=20, alignment=2)

        story = []
        story.append(self._header(normal_style, bold_style, title_style))
        story.append(Spacer(1, 0.5 * inch))
        story.append(self._parties(normal_style, bold_style, muted_style))
        story.append(Spacer(1, 0.5 * inch))
        story.append(self._items(normal_style, white_bold_style))
        story.append(Spacer(1, 0.2 * inch))
        story.append(self._totals(normal_style, bold_style))
        story.append(Spacer(1, 0.5 * inch))

        if self.document.get('notes'):
            story.append(Paragraph("Notes:", bold_style))
            story.append(Paragraph(escape(self.document['notes']), normal_style))
            story.append(Spacer(1, 10))
        terms = self.document.get('terms') or self.company.get('default_payment_terms')
        if terms:
            story.append(Paragraph("Terms:", bold_style))
            story.append(Paragraph(escape(terms), normal_style))
            story.append(Spacer(1, 10))
        if self.kind == 'invoice':
            story.extend(self._payment_instructions(normal_style, bold_style))

        doc.build(story)
        return target

    def _header(self, normal_style, bold_style, title_style):
        company = self.company
        sender_info = [Paragraph(escape(company.get('name', '')), bold_style)]
        for line in (company.get('address'),
                     f"{company.get('postal_code', '')} {company.get('city', '')}".strip(),
                     company.get('country')):
            if line:
                sender_info.append(Paragraph(escape(line), normal_style))
        if company.get('email'):
            sender_info.append(Paragraph(escape(f"Email: {company['email']}"), normal_style))
        if company.get('phone'):
            sender_info.append(Paragraph(escape(f"Phone: {company['phone']}"), normal_style))
        if company.get('tax_id'):
            sender_info.append(Paragraph(escape(f"Tax ID: {company['tax_id']}"), normal_style))

        title = [
            Paragraph(TITLES[self.kind], title_style),
            Paragraph(escape(f"#{self.number}"), ParagraphStyle('DocNum', parent=normal_style, alignment=2,
                                                        fontSize=12, textColor=colors.gray)),
        ]
        table = Table([[sender_info, title]], colWidths=[3.5 * inch, 2.5 * inch])
        table.setStyle(TableStyle([
            ('VALIGN', (0, 0), (-1, -1), 'TOP'),
            ('LEFTPADDING', (0, 0), (-1, -1), 0),
            ('RIGHTPADDING', (0, 0), (-1, -1), 0),
        ]))
        return table

    def _parties(self, normal_style, bold_style, muted_style):
        client = self.document.get('client') or {}
        bill_to = [
            Paragraph("Bill To:" if self.kind == 'invoice' else "Prepared For:", muted_style),
            Paragraph(escape(client.get('name') or ''), bold_style),
        ]
        for line in (client.get('address') or '').split('\n'):
            if line:
                bill_to.append(Paragraph(escape(line), normal_style))
        city_line = f"{client.get('postal_code') or ''} {client.get('city') or ''}".strip()
        if city_line:
            bill_to.append(Paragraph(escape(city_line), normal_style))
        if client.get('tax_id'):
            bill_to.append(Paragraph(escape(f"Tax ID: {client['tax_id']}"), normal_style))

        def detail_label(text, style=muted_style):
            return Paragraph(text, ParagraphStyle('DetailLabel', parent=style, alignment=2))

        def detail_value(text, style=normal_style):
            return Paragraph(text, ParagraphStyle('DetailValue', parent=style, alignment=2))

        if self.kind == 'invoice':
            details = [
                [detail_label("Invoice Date:"), detail_value(str(self.document['date']))],
                [detail_label("Due Date:"), detail_value(str(self.document['due_date']))],
                [detail_label("Balance Due:", bold_style), detail_value(self.money(self.document['balance']), bold_style)],
            ]
        else:
            details = [
                [detail_label("Quote Date:"), detail_value(str(self.document['date']))],
                [detail_label("Valid Until:"), detail_value(str(self.document['valid_until']))],
                [detail_label("Total:", bold_style), detail_value(self.money(self.document['total']), bold_style)],
            ]

        details_table = Table(details, colWidths=[1.8 * inch, 1.4 * inch])
        details_table.setStyle(TableStyle([
            ('VALIGN', (0, 0), (-1, -1), 'MIDDLE'),
            ('BACKGROUND', (0, -1), (-1, -1), colors.whitesmoke),
            ('PADDING', (0, -1), (-1, -1), 6),
        ]))
        table = Table([[bill_to, details_table]], colWidths=[3.0 * inch, 3.2 * inch])
        table.setStyle(TableStyle([
            ('VALIGN', (0, 0), (-1, -1), 'TOP'),
            ('LEFTPADDING', (0, 0), (-1, -1), 0),
        ]))
        return table

    def _items(self, normal_style, white_bold_style):
        rows = [[Paragraph(text, white_bold_style) for text in ("Item", "Qty", "Unit Price", "Tax", "Amount")]]
        for item in self.document.get('items', []):
            rows.append([
                Paragraph(escape(item['description'] or ''), normal_style),
                Paragraph(str(item['quantity']), normal_style),
                Paragraph(self.money(item['unit_price']), normal_style),
                Paragraph(f"{item['tax_rate']}%", normal_style),
                Paragraph(self.money(item['total']), normal_style),
            ])

        table = Table(rows, colWidths=[2.6 * inch, 0.7 * inch, 1.1 * inch, 0.6 * inch, 1.2 * inch], repeatRows=1)
        table.setStyle(TableStyle([
            ('BACKGROUND', (0, 0), (-1, 0), colors.Color(0.2, 0.2, 0.2)),
            ('TEXTCOLOR', (0, 0), (-1, 0), colors.white),
            ('ALIGN', (0, 0), (-1, -1), 'LEFT'),
            ('VALIGN', (0, 0), (-1, -1), 'MIDDLE'),
            ('PADDING', (0, 0), (-1, -1), 8),
            ('LINEBELOW', (0, 1), (-1, -1), 0.25, colors.lightgrey),
        ]))
        return table

    def _totals(self, normal_style, bold_style):
        rows = [
            [Paragraph("Subtotal:", bold_style), Paragraph(self.money(self.document['subtotal']), normal_style)],
            [Paragraph("Tax:", bold_style), Paragraph(self.money(self.document['tax_amount']), normal_style)],
            [Paragraph("Total:", bold_style), Paragraph(self.money(self.document['total']), bold_style)],
        ]
        if self.kind == 'invoice':
            rows.append([Paragraph("Paid:", bold_style), Paragraph(self.money(self.document['paid_amount']), normal_style)])
            rows.append([Paragraph("Balance Due:", bold_style), Paragraph(self.money(self.document['balance']), bold_style)])

        totals_table = Table(rows, colWidths=[1.5 * inch, 1.5 * inch])
        totals_table.setStyle(TableStyle([
            ('ALIGN', (0, 0), (-1, -1), 'RIGHT'),
            ('VALIGN', (0, 0), (-1, -1), 'TOP'),
        ]))
        # Container table pushes the totals to the right
        return Table([[None, totals_table]], colWidths=[3 * inch, 3 * inch])

    def _payment_instructions(self, normal_style, bold_style):
        company = self.company
        lines = [
            f"Bank: {company.get('bank_name', '')}",
            f"Account Holder Name: {company.get('bank_account') or company.get('name', '')}",
            f"IBAN: {company.get('bank_iban', '')}",
            f"BIC / Swift code: {company.get('bank_bic', '')}",
            f"Currency Code: {self.currency}",
        ]
        story = [
            Paragraph("Payment Instructions:", bold_style),
            Spacer(1, 5),
            Paragraph(f"Please reference invoice {self.number} with your payment.", normal_style),
            Spacer(1, 10),
        ]
        story.extend(Paragraph(escape(line), normal_style) for line in lines)
        return story
