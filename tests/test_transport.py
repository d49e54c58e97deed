import smtplib
import socket
import unittest
from unittest.mock import patch

from errors import DeliveryFailure
from notify.transport import SmtpTransport, build_message, categorize_smtp_error


class TestSmtpTransport(unittest.TestCase):
    def setUp(self):
        self.transport = SmtpTransport('smtp.example.com', 587, 'bot', 'pw', 'GitFort <bot@example.com>', timeout=5.0)

    @patch('notify.transport.smtplib.SMTP')
    def test_send_uses_starttls_login_and_timeout(self, smtp_cls):
        self.transport.send('octo@example.com', 'Subject', 'plain body', html='<p>html</p>')
        smtp_cls.assert_called_once_with('smtp.example.com', 587, timeout=5.0)
        server = smtp_cls.return_value.__enter__.return_value
        server.starttls.assert_called_once()
        server.login.assert_called_once_with('bot', 'pw')
        message = server.send_message.call_args[0][0]
        self.assertEqual(message['To'], 'octo@example.com')
        self.assertEqual(message['Subject'], 'Subject')
        self.assertEqual(len(message.get_payload()), 2)

    @patch('notify.transport.smtplib.SMTP')
    def test_no_login_without_user(self, smtp_cls):
        SmtpTransport('localhost', 25, starttls=False, sender='a@b.c').send('octo@example.com', 's', 'b')
        server = smtp_cls.return_value.__enter__.return_value
        server.login.assert_not_called()
        server.starttls.assert_not_called()

    @patch('notify.transport.smtplib.SMTP')
    def test_auth_failure_is_categorized(self, smtp_cls):
        smtp_cls.return_value.__enter__.return_value.login.side_effect = smtplib.SMTPAuthenticationError(535, b'bad credentials')
        with self.assertRaises(DeliveryFailure) as ctx:
            self.transport.send('octo@example.com', 's', 'b')
        self.assertEqual(ctx.exception.failure_type, 'authentication')

    @patch('notify.transport.smtplib.SMTP')
    def test_timeout_is_network_failure(self, smtp_cls):
        smtp_cls.side_effect = socket.timeout('timed out')
        with self.assertRaises(DeliveryFailure) as ctx:
            self.transport.send('octo@example.com', 's', 'b')
        self.assertEqual(ctx.exception.failure_type, 'network')
        self.assertTrue(ctx.exception.retryable)

    def test_invalid_recipient_is_rejected_before_connecting(self):
        with patch('notify.transport.smtplib.SMTP') as smtp_cls:
            with self.assertRaises(DeliveryFailure) as ctx:
                self.transport.send('not-an-address', 's', 'b')
        self.assertEqual(ctx.exception.failure_type, 'invalid_recipient')
        smtp_cls.assert_not_called()


def test_categorize_smtp_error():
    assert categorize_smtp_error(smtplib.SMTPRecipientsRefused({'x@y.z': (550, b'no such user')})) == 'invalid_recipient'
    assert categorize_smtp_error(smtplib.SMTPResponseException(421, b'too many connections')) == 'rate_limit'
    assert categorize_smtp_error(smtplib.SMTPServerDisconnected('gone')) == 'network'
    assert categorize_smtp_error(smtplib.SMTPConnectError(421, b'busy')) == 'network'
    assert categorize_smtp_error(ConnectionRefusedError()) == 'network'
    assert categorize_smtp_error(smtplib.SMTPDataError(554, b'rejected')) == 'unknown'


def test_build_message_without_html():
    message = build_message('a@b.c', 'd@e.f', 'hi', 'body')
    assert len(message.get_payload()) == 1
    assert message['From'] == 'a@b.c'
