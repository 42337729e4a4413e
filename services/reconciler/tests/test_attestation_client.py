import unittest
from unittest.mock import MagicMock

import requests

from services.common.errors import AttestationFailure, ProviderError
from services.reconciler.attestation import AttestationClient, parse_event_nonce, select_message

RECIPIENT = '0x2222222222222222222222222222222222abcdef'


def _response(status_code: int, payload=None) -> MagicMock:
    response = MagicMock(status_code=status_code)
    response.json.return_value = payload
    return response


def _v2_message(event_nonce: str, status: str, attestation: str | None, amount: int = 1, recipient: str = RECIPIENT) -> dict:
    return {
        'status': status,
        'attestation': attestation,
        'eventNonce': event_nonce,
        'decodedMessage': {
            'decodedMessageBody': {
                'amount': str(amount),
                'mintRecipient': '0x' + '00' * 12 + recipient[2:].lower()
            }
        }
    }


class AttestationClientTests(unittest.TestCase):
    def setUp(self) -> None:
        self.session = MagicMock()
        self.client = AttestationClient('https://iris.test/', timeout=3.0, session=self.session)

    def test_requests_message_by_source_domain_and_nonce(self) -> None:
        self.session.get.return_value = _response(404)

        self.client.get_message(6, 1234)

        self.session.get.assert_called_once_with(
            'https://iris.test/v2/messages/6',
            params={'nonce': '1234'},
            timeout=3.0
        )

    def test_not_found_means_no_record_yet(self) -> None:
        self.session.get.return_value = _response(404)

        self.assertIsNone(self.client.get_message(0, 1))

    def test_empty_message_list_means_no_record_yet(self) -> None:
        self.session.get.return_value = _response(200, {'messages': []})

        self.assertIsNone(self.client.get_message(0, 1))

    def test_complete_attestation(self) -> None:
        self.session.get.return_value = _response(
            200,
            {
                'messages': [
                    {
                        'status': 'complete',
                        'attestation': '0xfeed',
                        'message': '0x0001',
                        'decodedMessage': {'finalityThresholdExecuted': '1000'}
                    }
                ]
            }
        )

        result = self.client.get_message(0, 1)

        self.assertTrue(result.is_complete)
        self.assertEqual(result.attestation, '0xfeed')
        self.assertEqual(result.message, '0x0001')
        self.assertEqual(result.finality_threshold_executed, 1000)

    def test_complete_status_with_pending_placeholder_is_pending(self) -> None:
        self.session.get.return_value = _response(
            200,
            {'messages': [{'status': 'complete', 'attestation': 'PENDING'}]}
        )

        result = self.client.get_message(0, 1)

        self.assertFalse(result.is_complete)
        self.assertEqual(result.status, 'pending')
        self.assertIsNone(result.attestation)

    def test_pending_confirmations(self) -> None:
        self.session.get.return_value = _response(
            200,
            {'messages': [{'status': 'pending_confirmations', 'attestation': None}]}
        )

        self.assertEqual(self.client.get_message(0, 1).status, 'pending')

    def test_failed_message_raises_with_reason(self) -> None:
        self.session.get.return_value = _response(200, {'messages': [{'status': 'failed', 'error': 'expired'}]})

        with self.assertRaises(AttestationFailure) as caught:
            self.client.get_message(0, 1)

        self.assertEqual(caught.exception.reason, 'expired')

    def test_failed_message_without_reason_uses_default(self) -> None:
        self.session.get.return_value = _response(200, {'messages': [{'status': 'failed'}]})

        with self.assertRaises(AttestationFailure) as caught:
            self.client.get_message(0, 1)

        self.assertEqual(caught.exception.reason, 'Attestation failed')

    def test_rate_limit_and_server_errors_are_retryable(self) -> None:
        for status_code in (429, 500, 503):
            self.session.get.return_value = _response(status_code)

            with self.assertRaises(ProviderError):
                self.client.get_message(3, 1)

    def test_network_error_is_retryable(self) -> None:
        self.session.get.side_effect = requests.ConnectionError('connection reset')

        with self.assertRaises(ProviderError) as caught:
            self.client.get_message(3, 1)

        self.assertEqual(caught.exception.domain, 3)

    def test_invalid_json_is_retryable(self) -> None:
        response = _response(200)
        response.json.side_effect = ValueError('not json')
        self.session.get.return_value = response

        with self.assertRaises(ProviderError):
            self.client.get_message(0, 1)

    def test_transaction_lookup_resolves_the_assigned_nonce(self) -> None:
        self.session.get.return_value = _response(
            200,
            {'messages': [_v2_message('0x' + (1001).to_bytes(32, 'big').hex(), 'complete', '0xfeed')]}
        )

        result = self.client.get_transaction_message(6, '0xburn')

        self.session.get.assert_called_once_with(
            'https://iris.test/v2/messages/6',
            params={'transactionHash': '0xburn'},
            timeout=3.0
        )
        self.assertTrue(result.is_complete)
        self.assertEqual(result.event_nonce, 1001)

    def test_transaction_lookup_with_known_nonce_ignores_other_burns(self) -> None:
        self.session.get.return_value = _response(
            200,
            {
                'messages': [
                    {'status': 'failed', 'eventNonce': '0x07', 'error': 'expired'},
                    _v2_message('0x08', 'pending_confirmations', None)
                ]
            }
        )

        result = self.client.get_transaction_message(6, '0xburn', nonce=8)

        self.assertEqual(result.status, 'pending')
        self.assertEqual(result.event_nonce, 8)
        self.assertIsNone(self.client.get_transaction_message(6, '0xburn', nonce=9))

    def test_batched_burns_are_told_apart_by_amount_and_recipient(self) -> None:
        messages = [
            _v2_message('0x01', 'complete', '0xaa', amount=5, recipient=RECIPIENT),
            _v2_message('0x02', 'complete', '0xbb', amount=7, recipient=RECIPIENT),
            _v2_message('0x03', 'complete', '0xcc', amount=7, recipient='0x' + '44' * 20)
        ]

        self.assertIs(select_message(messages, amount=7, recipient=RECIPIENT.upper()), messages[1])
        self.assertIs(select_message(messages, amount=7, recipient='0x' + '44' * 20), messages[2])
        self.assertIsNone(select_message(messages, amount=9))
        self.assertIs(select_message(messages[:1], amount=9), messages[0])

    def test_event_nonce_formats(self) -> None:
        self.assertEqual(parse_event_nonce('12345'), 12345)
        self.assertEqual(parse_event_nonce('0x' + (2**40).to_bytes(32, 'big').hex()), 2**40)
        self.assertIsNone(parse_event_nonce(None))
        self.assertIsNone(parse_event_nonce('pending'))


if __name__ == '__main__':
    unittest.main()
