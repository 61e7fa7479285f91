"""
Envelope assembly for the DocuSign signature API
Builds the envelope definition and signature tabs for a single signer
"""

import base64
from dataclasses import dataclass

from docusign_esign import (
    EnvelopeDefinition, Document, Signer, SignHere, DateSigned, FullName,
    Tabs, Recipients
)

SIGNATURE_ANCHOR = '{{signature}}'
SIGNATURE_SECTION_MARKER = 'signature-section'

# Page numbers that select anchor placement on the last page
ANCHOR_PAGE_NUMBERS = ('last', '999')

DEFAULT_PAGE_NUMBER = 'last'
DEFAULT_X_POSITION = 100
DEFAULT_Y_POSITION = 700

DATE_X_OFFSET = 200
NAME_Y_OFFSET = -50

DEFAULT_EMAIL_SUBJECT = 'Please sign this document'

DOCUMENT_ID = '1'
SIGNER_RECIPIENT_ID = '1'

SIGNATURE_SECTION_HTML = """
<div class="signature-section" style="margin-top: 50px; padding: 20px; border-top: 1px solid #ccc;">
  <h3>Signature Required</h3>
  <p>Please provide your signature, name, and date below:</p>
  <div style="margin-top: 30px;">
    <div style="margin-bottom: 20px;">
      <label>Full Name: </label>
      <div style="border-bottom: 1px solid #000; width: 200px; display: inline-block;"></div>
    </div>
    <div style="margin-bottom: 20px;">
      <label>Signature: </label>
      <span style="color: #fff;">{{signature}}</span>
      <div style="border-bottom: 1px solid #000; width: 200px; display: inline-block;"></div>
    </div>
    <div style="margin-bottom: 20px;">
      <label>Date: </label>
      <div style="border-bottom: 1px solid #000; width: 200px; display: inline-block;"></div>
    </div>
  </div>
</div>
"""


@dataclass
class SignaturePosition:
    """Where the signature tab goes; the date and name tabs follow from it"""
    page_number: str = DEFAULT_PAGE_NUMBER
    x_position: int = DEFAULT_X_POSITION
    y_position: int = DEFAULT_Y_POSITION

    @property
    def uses_anchor(self):
        return self.page_number in ANCHOR_PAGE_NUMBERS


def parse_position(page_number=None, x_position=None, y_position=None):
    """
    Build a SignaturePosition from raw form values

    Empty values fall back to the defaults (anchor on the last page at 100, 700).

    Raises:
        ValueError: if the page is not a positive integer or "last", or a
            coordinate is not an integer
    """
    page = str(page_number).strip().lower() if page_number not in (None, '') else DEFAULT_PAGE_NUMBER
    if page not in ANCHOR_PAGE_NUMBERS:
        if not page.isdecimal() or int(page) < 1:
            raise ValueError('signaturePageNumber must be a positive integer or "last"')
        page = str(int(page))

    def _coordinate(value, default, field):
        if value in (None, ''):
            return default
        try:
            return int(str(value).strip())
        except ValueError:
            raise ValueError(f'{field} must be an integer')

    return SignaturePosition(
        page_number=page,
        x_position=_coordinate(x_position, DEFAULT_X_POSITION, 'signatureXPosition'),
        y_position=_coordinate(y_position, DEFAULT_Y_POSITION, 'signatureYPosition'),
    )


def _anchor_fields(x_offset, y_offset):
    return {
        'anchor_string': SIGNATURE_ANCHOR,
        'anchor_units': 'pixels',
        'anchor_x_offset': str(x_offset),
        'anchor_y_offset': str(y_offset),
    }


def _absolute_fields(page_number, x, y):
    return {
        'page_number': str(page_number),
        'x_position': str(x),
        'y_position': str(y),
    }


def build_signature_tabs(position=None):
    """
    Create the signature, date signed and full name tabs for the signer

    Anchor mode places every tab relative to the {{signature}} marker, since the
    page count is unknown until DocuSign renders the HTML. Otherwise the tabs use
    the literal page and coordinates. Either way the date tab sits 200px to the
    right of the signature and the name tab 50px above it.

    Args:
        position: SignaturePosition, defaults to anchor placement

    Returns:
        Tabs object for the signer
    """
    position = position or SignaturePosition()

    if position.uses_anchor:
        sign_fields = _anchor_fields(0, 0)
        date_fields = _anchor_fields(DATE_X_OFFSET, 0)
        name_fields = _anchor_fields(0, NAME_Y_OFFSET)
    else:
        x, y = position.x_position, position.y_position
        sign_fields = _absolute_fields(position.page_number, x, y)
        date_fields = _absolute_fields(position.page_number, x + DATE_X_OFFSET, y)
        name_fields = _absolute_fields(position.page_number, x, y + NAME_Y_OFFSET)

    common = {'document_id': DOCUMENT_ID, 'recipient_id': SIGNER_RECIPIENT_ID}

    return Tabs(
        sign_here_tabs=[SignHere(tab_label='SignHereTab', **common, **sign_fields)],
        date_signed_tabs=[DateSigned(tab_label='DateSignedTab', **common, **date_fields)],
        full_name_tabs=[FullName(tab_label='FullNameTab', **common, **name_fields)],
    )


def build_envelope_definition(document_name, document_content, signer_email, signer_name,
                              position=None, email_subject=None, email_blurb=None):
    """
    Assemble the envelope creation request for one signer

    Args:
        document_name: Display name of the uploaded document
        document_content: HTML text or bytes of the document
        signer_email: Email of the signer
        signer_name: Name of the signer
        position: Optional SignaturePosition for the tabs
        email_subject: Custom email subject (optional)
        email_blurb: Custom message to the signer (optional)

    Returns:
        EnvelopeDefinition with status 'sent'
    """
    if isinstance(document_content, str):
        document_content = document_content.encode('utf-8')

    document = Document(
        document_base64=base64.b64encode(document_content).decode('ascii'),
        name=document_name,
        file_extension='html',
        document_id=DOCUMENT_ID
    )

    signer = Signer(
        email=signer_email,
        name=signer_name,
        recipient_id=SIGNER_RECIPIENT_ID,
        routing_order='1',
        tabs=build_signature_tabs(position)
    )

    return EnvelopeDefinition(
        email_subject=email_subject or DEFAULT_EMAIL_SUBJECT,
        email_blurb=email_blurb or None,
        documents=[document],
        recipients=Recipients(signers=[signer]),
        status='sent'  # Send immediately
    )


def ensure_signature_section(html):
    """Append the signature block unless the document already has one"""
    if SIGNATURE_SECTION_MARKER in html:
        return html
    return html + SIGNATURE_SECTION_HTML
