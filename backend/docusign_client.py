"""
DocuSign API Client for the signature API
Handles JWT authentication and the envelope operations exposed over HTTP
"""

import json
import os
import logging
from concurrent.futures import ThreadPoolExecutor

from docusign_esign import (
    ApiClient, EnvelopesApi, Envelope, Signer, CarbonCopy, Recipients,
    RecipientViewRequest, CustomFields, TextCustomField, ListCustomField,
    EnvelopeNotificationRequest, Expirations
)
from docusign_esign.client.api_exception import ApiException

logger = logging.getLogger(__name__)

# Reserved document id DocuSign uses for the certificate of completion
CERTIFICATE_DOCUMENT_ID = 'certificate'

SIGNING_URL_EXPIRY_MINUTES = 5

WORKFLOW_STEPS = {
    'created': 'pending',
    'sent': 'in-progress',
    'delivered': 'in-progress',
    'completed': 'completed',
    'declined': 'terminated',
    'voided': 'terminated',
}


class DocuSignError(Exception):
    """An upstream DocuSign failure, carrying the provider's message"""

    def __init__(self, message, status=None, error_code=None):
        super().__init__(message)
        self.message = message
        self.status = status
        self.error_code = error_code


class ConsentRequiredError(DocuSignError):
    """JWT grant refused until an administrator grants impersonation consent"""

    def __init__(self, message, consent_url, status=None):
        super().__init__(message, status=status, error_code='consent_required')
        self.consent_url = consent_url


class RecipientNotFoundError(DocuSignError):
    pass


def _parse_error_body(body):
    if isinstance(body, bytes):
        body = body.decode('utf-8', errors='replace')
    if not body:
        return {}, ''
    try:
        data = json.loads(body)
    except ValueError:
        return {}, body
    return (data if isinstance(data, dict) else {}), body


def _bool_string(value):
    if value is None:
        return None
    if isinstance(value, str):
        return value.lower()
    return 'true' if value else 'false'


def _round_half_up(value):
    return int(value + 0.5)


def workflow_progress(status, signers, carbon_copies):
    """
    Derive a progress view from an envelope status and its recipients

    Args:
        status: Raw DocuSign envelope status
        signers: list of signer dicts with a 'status' key
        carbon_copies: list of carbon copy dicts

    Returns:
        dict with currentStep, totalRecipients, completedRecipients and
        progressPercentage
    """
    total = len(signers) + len(carbon_copies)
    completed = sum(1 for signer in signers if signer.get('status') == 'completed')
    percentage = _round_half_up(100 * completed / total) if total else 0

    return {
        'status': status,
        'currentStep': WORKFLOW_STEPS.get(status, 'pending'),
        'totalRecipients': total,
        'completedRecipients': completed,
        'progressPercentage': percentage,
    }


def _status_summary(envelope_id, envelope):
    return {
        'envelopeId': envelope.envelope_id or envelope_id,
        'status': envelope.status,
        'emailSubject': envelope.email_subject,
        'createdDateTime': envelope.created_date_time,
        'sentDateTime': envelope.sent_date_time,
        'lastModifiedDateTime': envelope.last_modified_date_time,
        'completedDateTime': envelope.completed_date_time,
        'voidedDateTime': envelope.voided_date_time,
        'voidedReason': envelope.voided_reason,
    }


def _signer_summary(signer):
    return {
        'recipientId': signer.recipient_id,
        'name': signer.name,
        'email': signer.email,
        'status': signer.status,
        'routingOrder': signer.routing_order,
        'deliveredDateTime': signer.delivered_date_time,
        'signedDateTime': signer.signed_date_time,
        'declinedReason': signer.declined_reason,
    }


def _carbon_copy_summary(carbon_copy):
    return {
        'recipientId': carbon_copy.recipient_id,
        'name': carbon_copy.name,
        'email': carbon_copy.email,
        'status': carbon_copy.status,
        'routingOrder': carbon_copy.routing_order,
        'deliveredDateTime': carbon_copy.delivered_date_time,
    }


def _text_field_summary(field):
    return {
        'fieldId': field.field_id,
        'name': field.name,
        'value': field.value,
        'show': field.show,
        'required': field.required,
    }


def _list_field_summary(field):
    summary = _text_field_summary(field)
    summary['listItems'] = field.list_items or []
    return summary


def _read_document(result):
    """
    Return the bytes of a downloaded document

    The SDK writes file responses to a temp file and hands back its path.
    """
    if isinstance(result, (bytes, bytearray)):
        return bytes(result)
    with open(result, 'rb') as document_file:
        content = document_file.read()
    os.unlink(result)
    return content


class DocuSignClient:
    """Client for DocuSign eSignature API integration"""

    scopes = ['signature', 'impersonation']
    token_lifetime = 3600

    def __init__(self, config, max_workers=10):
        """
        Args:
            config: Config with DocuSign credentials
            max_workers: Upper bound on concurrent lookups for bulk status
        """
        self.config = config
        self.account_id = config.account_id
        self.max_workers = max_workers

    def _translate_error(self, error, action):
        """Map an ApiException onto a DocuSignError with the upstream message"""
        data, raw = _parse_error_body(getattr(error, 'body', None))
        error_code = data.get('errorCode') or data.get('error')
        message = (data.get('message') or data.get('error_description')
                   or data.get('error') or raw or getattr(error, 'reason', None) or str(error))
        status = getattr(error, 'status', None)

        if error_code == 'consent_required':
            return ConsentRequiredError(
                f'{action}: consent_required. Grant consent for the integration key and retry.',
                consent_url=self.config.consent_url(),
                status=status
            )
        return DocuSignError(f'{action}: {message}', status=status, error_code=error_code)

    def get_access_token(self):
        """
        Exchange the integration key, user id and private key for a bearer token

        A fresh token is requested on every call.

        Returns:
            access token string
        """
        api_client = ApiClient()
        api_client.set_base_path(self.config.base_path)
        api_client.set_oauth_host_name(self.config.oauth_host)

        try:
            token_response = api_client.request_jwt_user_token(
                client_id=self.config.integration_key,
                user_id=self.config.user_id,
                oauth_host_name=self.config.oauth_host,
                private_key_bytes=self.config.private_key,
                expires_in=self.token_lifetime,
                scopes=self.scopes
            )
        except ApiException as e:
            error = self._translate_error(e, 'DocuSign authentication failed')
            logger.error(f"DocuSign JWT authentication failed: {error.message}")
            raise error
        except Exception as e:
            # malformed keys fail while signing the assertion
            logger.error(f"DocuSign JWT authentication failed: {e}")
            raise DocuSignError(f'DocuSign authentication failed: {e}')

        logger.info("DocuSign JWT authentication successful")
        return token_response.access_token

    def _get_api_client(self):
        """Create an authenticated API client"""
        access_token = self.get_access_token()
        api_client = ApiClient()
        api_client.set_base_path(self.config.base_path)
        api_client.set_default_header("Authorization", f"Bearer {access_token}")
        return api_client

    def _get_envelopes_api(self):
        return EnvelopesApi(self._get_api_client())

    def send_envelope(self, envelope_definition):
        """
        Create and send an envelope

        Args:
            envelope_definition: EnvelopeDefinition built by envelope.build_envelope_definition

        Returns:
            dict with envelopeId and status
        """
        envelopes_api = self._get_envelopes_api()
        try:
            envelope_summary = envelopes_api.create_envelope(
                self.account_id,
                envelope_definition=envelope_definition
            )
        except ApiException as e:
            raise self._translate_error(e, 'Failed to create DocuSign envelope')

        logger.info(f"DocuSign envelope created: {envelope_summary.envelope_id}")
        return {
            'envelopeId': envelope_summary.envelope_id,
            'status': envelope_summary.status,
        }

    def get_envelope_status(self, envelope_id):
        envelopes_api = self._get_envelopes_api()
        try:
            envelope = envelopes_api.get_envelope(self.account_id, envelope_id)
        except ApiException as e:
            raise self._translate_error(e, 'Failed to get envelope status')
        return _status_summary(envelope_id, envelope)

    def list_documents(self, envelope_id):
        envelopes_api = self._get_envelopes_api()
        try:
            result = envelopes_api.list_documents(self.account_id, envelope_id)
        except ApiException as e:
            raise self._translate_error(e, 'Failed to list envelope documents')

        documents = []
        for document in result.envelope_documents or []:
            documents.append({
                'documentId': document.document_id,
                'name': document.name,
                'type': document.type,
                'order': document.order,
                'uri': document.uri,
                'pageCount': len(document.pages or []),
            })
        return {'envelopeId': envelope_id, 'documents': documents}

    def get_document(self, envelope_id, document_id):
        """
        Download one document of an envelope

        Args:
            envelope_id: DocuSign envelope ID
            document_id: Document id, or 'combined' / 'certificate'

        Returns:
            PDF bytes
        """
        envelopes_api = self._get_envelopes_api()
        try:
            result = envelopes_api.get_document(
                self.account_id,
                document_id,
                envelope_id
            )
        except ApiException as e:
            raise self._translate_error(e, 'Failed to download document')
        return _read_document(result)

    def get_audit_trail(self, envelope_id):
        """Certificate of completion PDF for an envelope"""
        return self.get_document(envelope_id, CERTIFICATE_DOCUMENT_ID)

    def _fetch_recipients(self, envelopes_api, envelope_id):
        try:
            recipients = envelopes_api.list_recipients(self.account_id, envelope_id)
        except ApiException as e:
            raise self._translate_error(e, 'Failed to list recipients')

        signers = [_signer_summary(signer) for signer in recipients.signers or []]
        carbon_copies = [_carbon_copy_summary(cc) for cc in recipients.carbon_copies or []]
        return recipients, signers, carbon_copies

    def list_recipients(self, envelope_id):
        """
        Signers and carbon copies of an envelope with their status

        Returns:
            dict with envelopeId, recipientCount, signers and carbonCopies
        """
        envelopes_api = self._get_envelopes_api()
        _, signers, carbon_copies = self._fetch_recipients(envelopes_api, envelope_id)
        return {
            'envelopeId': envelope_id,
            'recipientCount': len(signers) + len(carbon_copies),
            'signers': signers,
            'carbonCopies': carbon_copies,
        }

    def add_recipients(self, envelope_id, signers=None, carbon_copies=None):
        """
        Add signers and carbon copies to an existing envelope

        Recipient ids default to 100+index for signers and 200+index for carbon
        copies; routing order defaults to index+1.

        Raises:
            ValueError: if a recipient is not an object with email and name
        """
        signers = signers or []
        carbon_copies = carbon_copies or []
        if not isinstance(signers, list) or not isinstance(carbon_copies, list):
            raise ValueError('signers and carbonCopies must be arrays')

        for recipient in signers + carbon_copies:
            if not isinstance(recipient, dict):
                raise ValueError('Each recipient must be an object with email and name')
            if not recipient.get('email') or not recipient.get('name'):
                raise ValueError('Each recipient requires email and name')

        new_signers = [
            Signer(
                email=signer['email'],
                name=signer['name'],
                recipient_id=str(signer.get('recipientId') or 100 + index),
                routing_order=str(signer.get('routingOrder') or index + 1),
                client_user_id=signer.get('clientUserId')
            )
            for index, signer in enumerate(signers)
        ]
        new_carbon_copies = [
            CarbonCopy(
                email=cc['email'],
                name=cc['name'],
                recipient_id=str(cc.get('recipientId') or 200 + index),
                routing_order=str(cc.get('routingOrder') or index + 1)
            )
            for index, cc in enumerate(carbon_copies)
        ]

        envelopes_api = self._get_envelopes_api()
        try:
            envelopes_api.create_recipient(
                self.account_id,
                envelope_id,
                recipients=Recipients(signers=new_signers, carbon_copies=new_carbon_copies)
            )
        except ApiException as e:
            raise self._translate_error(e, 'Failed to add recipients')

        logger.info(f"Added {len(new_signers)} signer(s) and {len(new_carbon_copies)} "
                    f"carbon copy recipient(s) to envelope {envelope_id}")

        def _summary(recipient):
            return {
                'recipientId': recipient.recipient_id,
                'name': recipient.name,
                'email': recipient.email,
                'routingOrder': recipient.routing_order,
            }

        return {
            'envelopeId': envelope_id,
            'signers': [_summary(s) for s in new_signers],
            'carbonCopies': [_summary(cc) for cc in new_carbon_copies],
        }

    def update_recipient(self, envelope_id, recipient_id, name=None, email=None, routing_order=None):
        """
        Change the name, email or routing order of a signer

        The update is always sent as a signer, so carbon copy recipients
        cannot be changed through it.

        Raises:
            ValueError: if no field to update is given
        """
        updates = {}
        if name:
            updates['name'] = name
        if email:
            updates['email'] = email
        if routing_order not in (None, ''):
            updates['routing_order'] = str(routing_order)
        if not updates:
            raise ValueError('At least one of name, email or routingOrder is required')

        envelopes_api = self._get_envelopes_api()
        try:
            summary = envelopes_api.update_recipients(
                self.account_id,
                envelope_id,
                recipients=Recipients(signers=[Signer(recipient_id=str(recipient_id), **updates)])
            )
        except ApiException as e:
            raise self._translate_error(e, 'Failed to update recipient')

        results = []
        for result in getattr(summary, 'recipient_update_results', None) or []:
            details = result.error_details
            results.append({
                'recipientId': result.recipient_id,
                'errorCode': details.error_code if details else None,
                'message': details.message if details else None,
            })

        return {
            'envelopeId': envelope_id,
            'recipientId': str(recipient_id),
            'updatedFields': {
                'routingOrder' if key == 'routing_order' else key: value
                for key, value in updates.items()
            },
            'results': results,
        }

    def get_custom_fields(self, envelope_id):
        envelopes_api = self._get_envelopes_api()
        try:
            fields = envelopes_api.list_custom_fields(self.account_id, envelope_id)
        except ApiException as e:
            raise self._translate_error(e, 'Failed to get custom fields')

        return {
            'envelopeId': envelope_id,
            'textCustomFields': [_text_field_summary(f) for f in fields.text_custom_fields or []],
            'listCustomFields': [_list_field_summary(f) for f in fields.list_custom_fields or []],
        }

    def add_custom_fields(self, envelope_id, text_fields=None, list_fields=None):
        """
        Add text and list custom fields to an envelope

        Raises:
            ValueError: if no fields are given or a field is not an object with a name
        """
        text_fields = text_fields or []
        list_fields = list_fields or []
        if not isinstance(text_fields, list) or not isinstance(list_fields, list):
            raise ValueError('textCustomFields and listCustomFields must be arrays')
        if not text_fields and not list_fields:
            raise ValueError('textCustomFields or listCustomFields is required')
        if any(not isinstance(field, dict) or not field.get('name') for field in text_fields + list_fields):
            raise ValueError('Each custom field must be an object with a name')
        if any(not isinstance(field.get('listItems', []), list) for field in list_fields):
            raise ValueError('listItems must be an array')

        custom_fields = CustomFields(
            text_custom_fields=[
                TextCustomField(
                    name=field['name'],
                    value=str(field.get('value', '')),
                    show=_bool_string(field.get('show', True)),
                    required=_bool_string(field.get('required', False))
                )
                for field in text_fields
            ],
            list_custom_fields=[
                ListCustomField(
                    name=field['name'],
                    value=str(field.get('value', '')),
                    list_items=[str(item) for item in field.get('listItems', [])],
                    show=_bool_string(field.get('show', True)),
                    required=_bool_string(field.get('required', False))
                )
                for field in list_fields
            ]
        )

        envelopes_api = self._get_envelopes_api()
        try:
            created = envelopes_api.create_custom_fields(
                self.account_id,
                envelope_id,
                custom_fields=custom_fields
            )
        except ApiException as e:
            raise self._translate_error(e, 'Failed to add custom fields')

        return {
            'envelopeId': envelope_id,
            'textCustomFields': [_text_field_summary(f) for f in created.text_custom_fields or []],
            'listCustomFields': [_list_field_summary(f) for f in created.list_custom_fields or []],
        }

    def create_signing_url(self, envelope_id, recipient_id, return_url=None):
        """
        Create an embedded signing URL for a signer of the envelope

        DocuSign expires the URL after a few minutes; the expiry reported here is
        informational only.

        Raises:
            RecipientNotFoundError: if the envelope has no signer with that id
        """
        envelopes_api = self._get_envelopes_api()
        recipients, _, _ = self._fetch_recipients(envelopes_api, envelope_id)

        signer = next(
            (s for s in recipients.signers or [] if str(s.recipient_id) == str(recipient_id)),
            None
        )
        if signer is None:
            raise RecipientNotFoundError(
                f'Recipient {recipient_id} not found on envelope {envelope_id}', status=404
            )

        view_request = RecipientViewRequest(
            authentication_method='none',
            client_user_id=signer.client_user_id or str(recipient_id),
            recipient_id=str(recipient_id),
            return_url=return_url or self.config.return_url,
            user_name=signer.name,
            email=signer.email
        )
        try:
            view = envelopes_api.create_recipient_view(
                self.account_id,
                envelope_id,
                recipient_view_request=view_request
            )
        except ApiException as e:
            raise self._translate_error(e, 'Failed to create signing URL')

        return {
            'envelopeId': envelope_id,
            'recipientId': str(recipient_id),
            'signingUrl': view.url,
            'expiresInMinutes': SIGNING_URL_EXPIRY_MINUTES,
        }

    def update_expiration(self, envelope_id, expire_enabled=None, expire_after=None, expire_warn=None):
        """
        Set the expiration policy of an envelope

        Raises:
            ValueError: if no expiration field is given
        """
        if expire_enabled is None and expire_after is None and expire_warn is None:
            raise ValueError('expireEnabled, expireAfter or expireWarn is required')

        request = EnvelopeNotificationRequest(
            use_account_defaults='false',
            expirations=Expirations(
                expire_enabled=_bool_string(expire_enabled if expire_enabled is not None else True),
                expire_after=None if expire_after is None else str(expire_after),
                expire_warn=None if expire_warn is None else str(expire_warn)
            )
        )

        envelopes_api = self._get_envelopes_api()
        try:
            notification = envelopes_api.update_notification_settings(
                self.account_id,
                envelope_id,
                envelope_notification_request=request
            )
        except ApiException as e:
            raise self._translate_error(e, 'Failed to update expiration')

        expirations = getattr(notification, 'expirations', None) or request.expirations
        return {
            'envelopeId': envelope_id,
            'expirations': {
                'expireEnabled': expirations.expire_enabled,
                'expireAfter': expirations.expire_after,
                'expireWarn': expirations.expire_warn,
            },
        }

    def void_envelope(self, envelope_id, reason):
        envelopes_api = self._get_envelopes_api()
        try:
            envelopes_api.update(
                self.account_id,
                envelope_id,
                envelope=Envelope(status='voided', voided_reason=reason)
            )
        except ApiException as e:
            raise self._translate_error(e, 'Failed to void envelope')

        logger.info(f"DocuSign envelope voided: {envelope_id}")
        return {'envelopeId': envelope_id, 'status': 'voided', 'voidedReason': reason}

    def resend_envelope(self, envelope_id):
        envelopes_api = self._get_envelopes_api()
        try:
            envelopes_api.update(
                self.account_id,
                envelope_id,
                envelope=Envelope(),
                resend_envelope='true'
            )
        except ApiException as e:
            raise self._translate_error(e, 'Failed to resend envelope')

        logger.info(f"DocuSign envelope resent: {envelope_id}")
        return {'envelopeId': envelope_id}

    def get_workflow(self, envelope_id):
        """
        Progress of an envelope through its recipients

        Returns:
            workflow_progress() view plus the envelope id and recipient lists
        """
        envelopes_api = self._get_envelopes_api()
        try:
            envelope = envelopes_api.get_envelope(self.account_id, envelope_id)
        except ApiException as e:
            raise self._translate_error(e, 'Failed to get envelope workflow')
        _, signers, carbon_copies = self._fetch_recipients(envelopes_api, envelope_id)

        workflow = {'envelopeId': envelope_id}
        workflow.update(workflow_progress(envelope.status, signers, carbon_copies))
        workflow['signers'] = signers
        workflow['carbonCopies'] = carbon_copies
        return workflow

    def bulk_envelope_status(self, envelope_ids):
        """
        Look up the status of several envelopes concurrently

        A failed lookup is reported in its own entry and does not fail the batch.

        Returns:
            dict with results (request order) and a summary of successes and errors
        """
        envelopes_api = self._get_envelopes_api()

        def _lookup(envelope_id):
            try:
                envelope = envelopes_api.get_envelope(self.account_id, envelope_id)
                return _status_summary(envelope_id, envelope)
            except ApiException as e:
                message = self._translate_error(e, 'Failed to get envelope status').message
            except Exception as e:
                message = str(e)
            logger.warning(f"Bulk status lookup failed for {envelope_id}: {message}")
            return {'envelopeId': envelope_id, 'status': None, 'error': message}

        workers = max(1, min(self.max_workers, len(envelope_ids)))
        with ThreadPoolExecutor(max_workers=workers) as executor:
            results = list(executor.map(_lookup, envelope_ids))

        errors = sum(1 for result in results if 'error' in result)
        return {
            'results': results,
            'summary': {
                'total': len(results),
                'successful': len(results) - errors,
                'errors': errors,
            },
        }
