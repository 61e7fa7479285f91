"""
HTTP routes for the DocuSign signature API
Every endpoint validates its input, calls the DocuSign client and reshapes the result
"""

import io
import os
import tempfile
from datetime import datetime, timezone

from flask import Blueprint, abort, current_app, jsonify, request, send_file
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address

from docusign_client import ConsentRequiredError, DocuSignError, RecipientNotFoundError
from envelope import build_envelope_definition, ensure_signature_section, parse_position

api = Blueprint('api', __name__, url_prefix='/api')

# Initialize rate limiter for API endpoints
limiter = Limiter(
    key_func=get_remote_address,
    default_limits=["200 per day", "50 per hour"],
    storage_uri="memory://"
)

DEFAULT_VOID_REASON = 'Voided via API'


def _docusign():
    return current_app.extensions['docusign_client']


def _utc_now():
    return datetime.now(timezone.utc).isoformat().replace('+00:00', 'Z')


def _json_body():
    """Parsed JSON object of the request; a missing or unparsable body reads as empty"""
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        abort(400, description="Request body must be a JSON object")
    return data


def _upstream_error(error_message, e):
    """500 response for a failed DocuSign call, with the upstream detail"""
    if isinstance(e, DocuSignError):
        current_app.logger.error('%s: %s', error_message, e.message)
        body = {"error": error_message, "details": e.message}
        if isinstance(e, ConsentRequiredError):
            body["consentUrl"] = e.consent_url
        return jsonify(body), 500

    current_app.logger.exception('%s: %s', error_message, str(e))
    return jsonify({"error": error_message, "details": str(e)}), 500


@api.route('/docusign-signature', methods=['POST'])
@limiter.limit("10 per hour")
def create_signature_envelope():
    email = (request.form.get('email') or '').strip()
    signer_name = (request.form.get('signerName') or '').strip()

    if not email or not signer_name:
        return jsonify({"error": "Email and signer name are required"}), 400

    upload = request.files.get('htmlFile')
    if upload is None:
        return jsonify({"error": "HTML file is required"}), 400

    try:
        position = parse_position(
            request.form.get('signaturePageNumber'),
            request.form.get('signatureXPosition'),
            request.form.get('signatureYPosition')
        )
    except ValueError as e:
        return jsonify({"error": str(e)}), 400

    temp_upload = None
    try:
        temp_upload = tempfile.NamedTemporaryFile(delete=False, suffix='.html')
        temp_upload.close()
        upload.save(temp_upload.name)

        with open(temp_upload.name, 'r', encoding='utf-8') as html_file:
            html_content = html_file.read()

        envelope_definition = build_envelope_definition(
            document_name=upload.filename or 'document.html',
            document_content=ensure_signature_section(html_content),
            signer_email=email,
            signer_name=signer_name,
            position=position,
            email_subject=request.form.get('emailSubject'),
            email_blurb=request.form.get('emailMessage')
        )

        current_app.logger.info(f'Sending to DocuSign: recipient={email} anchor={position.uses_anchor}')
        result = _docusign().send_envelope(envelope_definition)
        current_app.logger.info(f'DocuSign envelope created: {result["envelopeId"]}')

        return jsonify({
            'success': True,
            'message': 'Document sent for signature successfully',
            'envelopeId': result['envelopeId'],
            'status': result['status'],
            'recipientEmail': email
        }), 200

    except UnicodeDecodeError as e:
        current_app.logger.warning(f'Uploaded HTML is not UTF-8: {e}')
        return jsonify({"error": "HTML file must be UTF-8 encoded"}), 400
    except Exception as e:
        return _upstream_error('Failed to process document', e)
    finally:
        if temp_upload and os.path.exists(temp_upload.name):
            try:
                os.unlink(temp_upload.name)
            except OSError as e:
                current_app.logger.warning(f"Failed to delete temp upload file: {e}")


@api.route('/health', methods=['GET'])
@limiter.exempt
def health():
    return jsonify({'status': 'OK', 'timestamp': _utc_now()})


@api.route('/envelope/<envelope_id>/status', methods=['GET'])
def envelope_status(envelope_id):
    try:
        return jsonify(_docusign().get_envelope_status(envelope_id))
    except Exception as e:
        return _upstream_error('Failed to get envelope status', e)


@api.route('/envelope/<envelope_id>/documents', methods=['GET'])
def envelope_documents(envelope_id):
    try:
        return jsonify(_docusign().list_documents(envelope_id))
    except Exception as e:
        return _upstream_error('Failed to list envelope documents', e)


def _pdf_response(content, filename):
    return send_file(
        io.BytesIO(content),
        mimetype='application/pdf',
        as_attachment=True,
        download_name=filename
    )


@api.route('/envelope/<envelope_id>/documents/<document_id>', methods=['GET'])
def envelope_document(envelope_id, document_id):
    try:
        content = _docusign().get_document(envelope_id, document_id)
    except Exception as e:
        return _upstream_error('Failed to download document', e)
    return _pdf_response(content, f'envelope-{envelope_id}-document-{document_id}.pdf')


@api.route('/envelope/<envelope_id>/audit-trail', methods=['GET'])
def envelope_audit_trail(envelope_id):
    try:
        content = _docusign().get_audit_trail(envelope_id)
    except Exception as e:
        return _upstream_error('Failed to download audit trail', e)
    return _pdf_response(content, f'envelope-{envelope_id}-audit-trail.pdf')


@api.route('/envelope/<envelope_id>/recipients', methods=['GET'])
def envelope_recipients(envelope_id):
    try:
        return jsonify(_docusign().list_recipients(envelope_id))
    except Exception as e:
        return _upstream_error('Failed to get recipients', e)


@api.route('/envelope/<envelope_id>/recipients', methods=['POST'])
def add_envelope_recipients(envelope_id):
    data = _json_body()
    signers = data.get('signers') or []
    carbon_copies = data.get('carbonCopies') or []

    if not isinstance(signers, list) or not isinstance(carbon_copies, list):
        return jsonify({"error": "signers and carbonCopies must be arrays"}), 400
    if not signers and not carbon_copies:
        return jsonify({"error": "At least one signer or carbon copy is required"}), 400

    try:
        result = _docusign().add_recipients(envelope_id, signers, carbon_copies)
    except ValueError as e:
        return jsonify({"error": str(e)}), 400
    except Exception as e:
        return _upstream_error('Failed to add recipients', e)

    result.update({'success': True, 'message': 'Recipients added successfully'})
    return jsonify(result)


@api.route('/envelope/<envelope_id>/recipients/<recipient_id>', methods=['PUT'])
def update_envelope_recipient(envelope_id, recipient_id):
    data = _json_body()
    try:
        result = _docusign().update_recipient(
            envelope_id,
            recipient_id,
            name=data.get('name'),
            email=data.get('email'),
            routing_order=data.get('routingOrder')
        )
    except ValueError as e:
        return jsonify({"error": str(e)}), 400
    except Exception as e:
        return _upstream_error('Failed to update recipient', e)

    result.update({'success': True, 'message': 'Recipient updated successfully'})
    return jsonify(result)


@api.route('/envelope/<envelope_id>/void', methods=['POST'])
def void_envelope(envelope_id):
    reason = _json_body().get('reason') or DEFAULT_VOID_REASON
    try:
        result = _docusign().void_envelope(envelope_id, reason)
    except Exception as e:
        return _upstream_error('Failed to void envelope', e)

    result.update({'success': True, 'message': 'Envelope voided successfully'})
    return jsonify(result)


@api.route('/envelope/<envelope_id>/resend', methods=['POST'])
def resend_envelope(envelope_id):
    try:
        result = _docusign().resend_envelope(envelope_id)
    except Exception as e:
        return _upstream_error('Failed to resend envelope', e)

    result.update({'success': True, 'message': 'Envelope resent successfully'})
    return jsonify(result)


@api.route('/envelope/<envelope_id>/custom-fields', methods=['GET'])
def envelope_custom_fields(envelope_id):
    try:
        return jsonify(_docusign().get_custom_fields(envelope_id))
    except Exception as e:
        return _upstream_error('Failed to get custom fields', e)


@api.route('/envelope/<envelope_id>/custom-fields', methods=['POST'])
def add_envelope_custom_fields(envelope_id):
    data = _json_body()
    try:
        result = _docusign().add_custom_fields(
            envelope_id,
            text_fields=data.get('textCustomFields'),
            list_fields=data.get('listCustomFields')
        )
    except ValueError as e:
        return jsonify({"error": str(e)}), 400
    except Exception as e:
        return _upstream_error('Failed to add custom fields', e)

    result.update({'success': True, 'message': 'Custom fields added successfully'})
    return jsonify(result)


@api.route('/envelope/<envelope_id>/signing-url', methods=['POST'])
def envelope_signing_url(envelope_id):
    data = _json_body()
    recipient_id = data.get('recipientId')
    if not recipient_id:
        return jsonify({"error": "recipientId is required"}), 400

    try:
        result = _docusign().create_signing_url(
            envelope_id,
            str(recipient_id),
            return_url=data.get('returnUrl')
        )
    except RecipientNotFoundError as e:
        return jsonify({"error": e.message}), 404
    except Exception as e:
        return _upstream_error('Failed to create signing URL', e)

    result['success'] = True
    return jsonify(result)


@api.route('/envelope/<envelope_id>/expiration', methods=['PUT'])
def update_envelope_expiration(envelope_id):
    data = _json_body()
    try:
        result = _docusign().update_expiration(
            envelope_id,
            expire_enabled=data.get('expireEnabled'),
            expire_after=data.get('expireAfter'),
            expire_warn=data.get('expireWarn')
        )
    except ValueError as e:
        return jsonify({"error": str(e)}), 400
    except Exception as e:
        return _upstream_error('Failed to update expiration', e)

    result.update({'success': True, 'message': 'Expiration updated successfully'})
    return jsonify(result)


@api.route('/envelope/<envelope_id>/comments', methods=['POST'])
def add_envelope_comment(envelope_id):
    # Comments are echoed back only; nothing is stored or sent to DocuSign
    data = _json_body()
    text = (data.get('text') or '').strip()
    if not text:
        return jsonify({"error": "Comment text is required"}), 400

    return jsonify({
        'success': True,
        'envelopeId': envelope_id,
        'comment': {
            'text': text,
            'visibleTo': data.get('visibleTo') or [],
            'createdAt': _utc_now()
        },
        'note': 'Comments are not stored; this endpoint echoes the submitted comment'
    })


@api.route('/envelope/<envelope_id>/workflow', methods=['GET'])
def envelope_workflow(envelope_id):
    try:
        return jsonify(_docusign().get_workflow(envelope_id))
    except Exception as e:
        return _upstream_error('Failed to get envelope workflow', e)


@api.route('/envelopes/bulk-status', methods=['POST'])
def bulk_envelope_status():
    envelope_ids = _json_body().get('envelopeIds')
    if not isinstance(envelope_ids, list) or not envelope_ids:
        return jsonify({"error": "envelopeIds must be a non-empty array"}), 400

    try:
        return jsonify(_docusign().bulk_envelope_status([str(i) for i in envelope_ids]))
    except Exception as e:
        return _upstream_error('Failed to get bulk envelope status', e)
