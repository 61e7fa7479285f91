"""
Unit tests for the DocuSign client
The SDK's ApiClient and EnvelopesApi are mocked; model objects are real
"""
import os
import sys
import tempfile
import unittest
from unittest import mock

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from docusign_esign import (
    CarbonCopy, CustomFields, Envelope, EnvelopeSummary, Expirations, ListCustomField,
    Notification, Recipients, Signer, TextCustomField, ViewUrl
)

from docusign_client import (
    ConsentRequiredError, DocuSignClient, DocuSignError, RecipientNotFoundError,
    workflow_progress
)
from tests.fixtures import (
    ACCOUNT_ID, CONSENT_ERROR, INTEGRATION_KEY, NOT_FOUND_ERROR, PRIVATE_KEY, USER_ID,
    api_exception, make_config
)


class DocuSignClientTestCase(unittest.TestCase):
    """Patches the SDK entry points used by DocuSignClient"""

    def setUp(self):
        api_client_patcher = mock.patch('docusign_client.ApiClient')
        envelopes_api_patcher = mock.patch('docusign_client.EnvelopesApi')
        self.ApiClient = api_client_patcher.start()
        self.EnvelopesApi = envelopes_api_patcher.start()
        self.addCleanup(api_client_patcher.stop)
        self.addCleanup(envelopes_api_patcher.stop)

        self.api_client = self.ApiClient.return_value
        self.api_client.request_jwt_user_token.return_value = mock.Mock(access_token='token-123')
        self.envelopes_api = self.EnvelopesApi.return_value

        self.client = DocuSignClient(make_config())


class TestTokenProvider(DocuSignClientTestCase):

    def test_jwt_grant(self):
        self.assertEqual(self.client.get_access_token(), 'token-123')

        self.api_client.request_jwt_user_token.assert_called_once_with(
            client_id=INTEGRATION_KEY,
            user_id=USER_ID,
            oauth_host_name='account-d.docusign.com',
            private_key_bytes=PRIVATE_KEY,
            expires_in=3600,
            scopes=['signature', 'impersonation']
        )

    def test_bearer_header_on_api_calls(self):
        self.envelopes_api.get_envelope.return_value = Envelope(envelope_id='env-1', status='sent')
        self.client.get_envelope_status('env-1')

        self.api_client.set_default_header.assert_any_call('Authorization', 'Bearer token-123')

    def test_new_token_per_request(self):
        self.envelopes_api.get_envelope.return_value = Envelope(envelope_id='env-1', status='sent')
        self.client.get_envelope_status('env-1')
        self.client.get_envelope_status('env-1')

        self.assertEqual(self.api_client.request_jwt_user_token.call_count, 2)

    def test_consent_required(self):
        self.api_client.request_jwt_user_token.side_effect = api_exception(400, CONSENT_ERROR)

        with self.assertRaises(ConsentRequiredError) as ctx:
            self.client.get_access_token()

        self.assertEqual(ctx.exception.error_code, 'consent_required')
        self.assertIn(f'client_id={INTEGRATION_KEY}', ctx.exception.consent_url)

    def test_malformed_key_surfaces_as_upstream_error(self):
        self.api_client.request_jwt_user_token.side_effect = ValueError('Could not deserialize key data')

        with self.assertRaises(DocuSignError) as ctx:
            self.client.get_access_token()

        self.assertIn('Could not deserialize key data', ctx.exception.message)

    def test_auth_failure_skips_api_call(self):
        self.api_client.request_jwt_user_token.side_effect = api_exception(400, {'error': 'invalid_grant'})

        with self.assertRaises(DocuSignError):
            self.client.get_envelope_status('env-1')

        self.envelopes_api.get_envelope.assert_not_called()


class TestEnvelopeOperations(DocuSignClientTestCase):

    def test_send_envelope(self):
        self.envelopes_api.create_envelope.return_value = EnvelopeSummary(envelope_id='env-1', status='sent')
        definition = mock.sentinel.definition

        result = self.client.send_envelope(definition)

        self.assertEqual(result, {'envelopeId': 'env-1', 'status': 'sent'})
        self.envelopes_api.create_envelope.assert_called_once_with(ACCOUNT_ID, envelope_definition=definition)

    def test_upstream_message_is_kept(self):
        self.envelopes_api.get_envelope.side_effect = api_exception(404, NOT_FOUND_ERROR, 'Not Found')

        with self.assertRaises(DocuSignError) as ctx:
            self.client.get_envelope_status('missing')

        self.assertIn(NOT_FOUND_ERROR['message'], ctx.exception.message)
        self.assertEqual(ctx.exception.error_code, 'ENVELOPE_DOES_NOT_EXIST')
        self.assertEqual(ctx.exception.status, 404)

    def test_envelope_status(self):
        self.envelopes_api.get_envelope.return_value = Envelope(
            envelope_id='env-1', status='completed',
            created_date_time='2024-05-01T10:00:00Z',
            completed_date_time='2024-05-02T10:00:00Z'
        )

        result = self.client.get_envelope_status('env-1')

        self.assertEqual(result['envelopeId'], 'env-1')
        self.assertEqual(result['status'], 'completed')
        self.assertEqual(result['createdDateTime'], '2024-05-01T10:00:00Z')
        self.assertEqual(result['completedDateTime'], '2024-05-02T10:00:00Z')
        self.envelopes_api.get_envelope.assert_called_once_with(ACCOUNT_ID, 'env-1')

    def test_void(self):
        result = self.client.void_envelope('env-1', 'Contract withdrawn')

        _, kwargs = self.envelopes_api.update.call_args
        self.assertEqual(kwargs['envelope'].status, 'voided')
        self.assertEqual(kwargs['envelope'].voided_reason, 'Contract withdrawn')
        self.assertEqual(result['status'], 'voided')

    def test_resend(self):
        self.client.resend_envelope('env-1')

        args, kwargs = self.envelopes_api.update.call_args
        self.assertEqual(args, (ACCOUNT_ID, 'env-1'))
        self.assertEqual(kwargs['resend_envelope'], 'true')

    def test_expiration(self):
        self.envelopes_api.update_notification_settings.return_value = Notification(
            expirations=Expirations(expire_enabled='true', expire_after='30', expire_warn='5')
        )

        result = self.client.update_expiration('env-1', expire_enabled=True, expire_after=30, expire_warn=5)

        _, kwargs = self.envelopes_api.update_notification_settings.call_args
        request = kwargs['envelope_notification_request']
        self.assertEqual(request.use_account_defaults, 'false')
        self.assertEqual(request.expirations.expire_after, '30')
        self.assertEqual(result['expirations'], {'expireEnabled': 'true', 'expireAfter': '30', 'expireWarn': '5'})

    def test_expiration_requires_a_field(self):
        with self.assertRaises(ValueError):
            self.client.update_expiration('env-1')
        self.api_client.request_jwt_user_token.assert_not_called()


class TestDocuments(DocuSignClientTestCase):

    def test_document_bytes(self):
        self.envelopes_api.get_document.return_value = b'%PDF-1.4 test'

        self.assertEqual(self.client.get_document('env-1', '1'), b'%PDF-1.4 test')
        self.envelopes_api.get_document.assert_called_once_with(ACCOUNT_ID, '1', 'env-1')

    def test_document_temp_file_is_read_and_removed(self):
        handle, path = tempfile.mkstemp(suffix='.pdf')
        with os.fdopen(handle, 'wb') as f:
            f.write(b'%PDF-1.7 from disk')
        self.envelopes_api.get_document.return_value = path

        self.assertEqual(self.client.get_document('env-1', 'combined'), b'%PDF-1.7 from disk')
        self.assertFalse(os.path.exists(path))

    def test_audit_trail_uses_certificate(self):
        self.envelopes_api.get_document.return_value = b'%PDF cert'

        self.client.get_audit_trail('env-1')

        self.envelopes_api.get_document.assert_called_once_with(ACCOUNT_ID, 'certificate', 'env-1')


class TestRecipients(DocuSignClientTestCase):

    def test_list_recipients(self):
        self.envelopes_api.list_recipients.return_value = Recipients(
            signers=[Signer(recipient_id='1', name='Jane', email='jane@example.com',
                            status='completed', routing_order='1', signed_date_time='2024-05-01')],
            carbon_copies=[CarbonCopy(recipient_id='2', name='Ops', email='ops@example.com',
                                      status='created', routing_order='2')]
        )

        result = self.client.list_recipients('env-1')

        self.assertEqual(result['recipientCount'], 2)
        self.assertEqual(result['signers'][0]['signedDateTime'], '2024-05-01')
        self.assertEqual(result['carbonCopies'][0]['email'], 'ops@example.com')

    def test_add_recipients_assigns_ids_and_order(self):
        result = self.client.add_recipients(
            'env-1',
            signers=[{'email': 'a@example.com', 'name': 'A'},
                     {'email': 'b@example.com', 'name': 'B', 'routingOrder': 5}],
            carbon_copies=[{'email': 'c@example.com', 'name': 'C'}]
        )

        _, kwargs = self.envelopes_api.create_recipient.call_args
        signers = kwargs['recipients'].signers
        carbon_copies = kwargs['recipients'].carbon_copies
        self.assertEqual([s.recipient_id for s in signers], ['100', '101'])
        self.assertEqual([s.routing_order for s in signers], ['1', '5'])
        self.assertEqual(carbon_copies[0].recipient_id, '200')
        self.assertEqual(carbon_copies[0].routing_order, '1')
        self.assertEqual(result['carbonCopies'][0]['recipientId'], '200')

    def test_add_recipients_keeps_given_ids(self):
        self.client.add_recipients('env-1', signers=[{'email': 'a@example.com', 'name': 'A', 'recipientId': '7'}])

        _, kwargs = self.envelopes_api.create_recipient.call_args
        self.assertEqual(kwargs['recipients'].signers[0].recipient_id, '7')

    def test_add_recipients_requires_email_and_name(self):
        with self.assertRaises(ValueError):
            self.client.add_recipients('env-1', signers=[{'name': 'No Email'}])

        self.api_client.request_jwt_user_token.assert_not_called()
        self.envelopes_api.create_recipient.assert_not_called()

    def test_add_recipients_rejects_non_object_entries(self):
        for kwargs in ({'signers': ['a@example.com']},
                       {'carbon_copies': [None]},
                       {'signers': {'email': 'a@example.com', 'name': 'A'}}):
            with self.subTest(**kwargs):
                with self.assertRaises(ValueError):
                    self.client.add_recipients('env-1', **kwargs)

        self.api_client.request_jwt_user_token.assert_not_called()
        self.envelopes_api.create_recipient.assert_not_called()

    def test_update_recipient_sends_only_given_fields(self):
        result = self.client.update_recipient('env-1', '1', email='new@example.com')

        _, kwargs = self.envelopes_api.update_recipients.call_args
        signer = kwargs['recipients'].signers[0]
        self.assertEqual(signer.recipient_id, '1')
        self.assertEqual(signer.email, 'new@example.com')
        self.assertIsNone(signer.name)
        self.assertEqual(result['updatedFields'], {'email': 'new@example.com'})

    def test_update_recipient_is_sent_as_signer(self):
        self.client.update_recipient('env-1', '200', name='Ops Team')

        _, kwargs = self.envelopes_api.update_recipients.call_args
        recipients = kwargs['recipients']
        self.assertEqual([s.recipient_id for s in recipients.signers], ['200'])
        self.assertIsNone(recipients.carbon_copies)

    def test_update_recipient_requires_a_field(self):
        with self.assertRaises(ValueError):
            self.client.update_recipient('env-1', '1')

    def test_signing_url(self):
        self.envelopes_api.list_recipients.return_value = Recipients(
            signers=[Signer(recipient_id='1', name='Jane', email='jane@example.com')]
        )
        self.envelopes_api.create_recipient_view.return_value = ViewUrl(url='https://demo.docusign.net/signing/abc')

        result = self.client.create_signing_url('env-1', '1')

        _, kwargs = self.envelopes_api.create_recipient_view.call_args
        request = kwargs['recipient_view_request']
        self.assertEqual(request.user_name, 'Jane')
        self.assertEqual(request.email, 'jane@example.com')
        self.assertEqual(request.client_user_id, '1')
        self.assertEqual(request.return_url, 'https://app.example.com/signed')
        self.assertEqual(result['signingUrl'], 'https://demo.docusign.net/signing/abc')
        self.assertEqual(result['expiresInMinutes'], 5)

    def test_signing_url_unknown_recipient(self):
        self.envelopes_api.list_recipients.return_value = Recipients(signers=[])

        with self.assertRaises(RecipientNotFoundError):
            self.client.create_signing_url('env-1', '42')
        self.envelopes_api.create_recipient_view.assert_not_called()


class TestCustomFields(DocuSignClientTestCase):

    def test_get_custom_fields(self):
        self.envelopes_api.list_custom_fields.return_value = CustomFields(
            text_custom_fields=[TextCustomField(field_id='10', name='ref', value='42', show='true', required='false')],
            list_custom_fields=[ListCustomField(field_id='11', name='tier', value='gold',
                                                list_items=['gold', 'silver'], show='true', required='true')]
        )

        result = self.client.get_custom_fields('env-1')

        self.assertEqual(result['textCustomFields'][0]['name'], 'ref')
        self.assertEqual(result['listCustomFields'][0]['listItems'], ['gold', 'silver'])

    def test_add_custom_fields(self):
        self.envelopes_api.create_custom_fields.return_value = CustomFields(
            text_custom_fields=[TextCustomField(field_id='10', name='ref', value='42', show='true', required='false')]
        )

        result = self.client.add_custom_fields('env-1', text_fields=[{'name': 'ref', 'value': 42}])

        _, kwargs = self.envelopes_api.create_custom_fields.call_args
        field = kwargs['custom_fields'].text_custom_fields[0]
        self.assertEqual((field.name, field.value, field.show, field.required), ('ref', '42', 'true', 'false'))
        self.assertEqual(result['textCustomFields'][0]['fieldId'], '10')

    def test_add_custom_fields_requires_fields(self):
        with self.assertRaises(ValueError):
            self.client.add_custom_fields('env-1')

    def test_add_custom_fields_rejects_non_object_entries(self):
        for kwargs in ({'text_fields': ['ref']},
                       {'list_fields': [42]},
                       {'text_fields': {'name': 'ref'}},
                       {'list_fields': [{'name': 'tier', 'listItems': 'gold'}]}):
            with self.subTest(**kwargs):
                with self.assertRaises(ValueError):
                    self.client.add_custom_fields('env-1', **kwargs)

        self.api_client.request_jwt_user_token.assert_not_called()
        self.envelopes_api.create_custom_fields.assert_not_called()


class TestWorkflow(DocuSignClientTestCase):

    def test_progress_counts(self):
        signers = [{'status': 'completed'}, {'status': 'completed'}, {'status': 'sent'}]
        progress = workflow_progress('sent', signers, [{'status': 'created'}])

        self.assertEqual(progress['totalRecipients'], 4)
        self.assertEqual(progress['completedRecipients'], 2)
        self.assertEqual(progress['progressPercentage'], 50)
        self.assertEqual(progress['currentStep'], 'in-progress')

    def test_progress_rounds_half_up(self):
        signers = [{'status': 'completed'}] + [{'status': 'sent'}] * 7
        self.assertEqual(workflow_progress('sent', signers, [])['progressPercentage'], 13)

    def test_no_recipients(self):
        self.assertEqual(workflow_progress('created', [], [])['progressPercentage'], 0)

    def test_current_step_mapping(self):
        expected = {
            'created': 'pending', 'sent': 'in-progress', 'delivered': 'in-progress',
            'completed': 'completed', 'declined': 'terminated', 'voided': 'terminated',
            'correct': 'pending',
        }
        for status, step in expected.items():
            with self.subTest(status=status):
                self.assertEqual(workflow_progress(status, [], [])['currentStep'], step)

    def test_get_workflow(self):
        self.envelopes_api.get_envelope.return_value = Envelope(envelope_id='env-1', status='delivered')
        self.envelopes_api.list_recipients.return_value = Recipients(
            signers=[Signer(recipient_id='1', status='completed'),
                     Signer(recipient_id='2', status='completed'),
                     Signer(recipient_id='3', status='delivered')],
            carbon_copies=[CarbonCopy(recipient_id='4', status='created')]
        )

        workflow = self.client.get_workflow('env-1')

        self.assertEqual(workflow['envelopeId'], 'env-1')
        self.assertEqual(workflow['totalRecipients'], 4)
        self.assertEqual(workflow['completedRecipients'], 2)
        self.assertEqual(workflow['progressPercentage'], 50)
        self.assertEqual(workflow['currentStep'], 'in-progress')
        self.assertEqual(len(workflow['signers']), 3)


class TestBulkStatus(DocuSignClientTestCase):

    def test_one_failure_does_not_fail_batch(self):
        def get_envelope(account_id, envelope_id):
            if envelope_id == 'B':
                raise api_exception(404, NOT_FOUND_ERROR, 'Not Found')
            return Envelope(envelope_id=envelope_id, status='sent')
        self.envelopes_api.get_envelope.side_effect = get_envelope

        result = self.client.bulk_envelope_status(['A', 'B'])

        self.assertEqual(result['summary'], {'total': 2, 'successful': 1, 'errors': 1})
        success, failure = result['results']
        self.assertEqual(success['envelopeId'], 'A')
        self.assertEqual(success['status'], 'sent')
        self.assertNotIn('error', success)
        self.assertEqual(failure['envelopeId'], 'B')
        self.assertIsNone(failure['status'])
        self.assertIn(NOT_FOUND_ERROR['message'], failure['error'])

    def test_unexpected_errors_are_reported_per_id(self):
        self.envelopes_api.get_envelope.side_effect = ConnectionError('connection reset')

        result = self.client.bulk_envelope_status(['A', 'B', 'C'])

        self.assertEqual(result['summary']['errors'], 3)
        self.assertEqual([r['envelopeId'] for r in result['results']], ['A', 'B', 'C'])
        self.assertEqual(result['results'][0]['error'], 'connection reset')

    def test_single_token_for_batch(self):
        self.envelopes_api.get_envelope.return_value = Envelope(status='sent')

        self.client.bulk_envelope_status(['A', 'B', 'C'])

        self.assertEqual(self.api_client.request_jwt_user_token.call_count, 1)
        self.assertEqual(self.envelopes_api.get_envelope.call_count, 3)


if __name__ == '__main__':
    unittest.main()
