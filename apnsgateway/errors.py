# Copyright 2013 Getlogic BV, Sardar Yumatov
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#   http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

import builtins
from types import MappingProxyType


__all__ = ('STATUS_CODES', 'status_message', 'APNsError', 'CertificateError', 'CertificateParseError',
           'KeyParseError', 'DecryptionError', 'ConnectionError',
           'ReadWriteError', 'ReadTimeoutError', 'StreamClosedError',
           'WriteError', 'ProtocolError', 'InvalidTokenError',
           'PayloadTooLargeError', 'InvalidPayloadError',
           'DeliveryStatusError')


# error-response status codes as documented in the binary provider API
STATUS_CODES = MappingProxyType({
    0: 'No errors encountered',
    1: 'Processing error',
    2: 'Missing device token',
    3: 'Missing topic',
    4: 'Missing payload',
    5: 'Invalid token size',
    6: 'Invalid topic size',
    7: 'Invalid payload size',
    8: 'Invalid token',
    10: 'Shutdown',
    255: 'Unknown error',
})


def status_message(status):
    """ Explanation of an error-response status, "Unknown error" if unknown. """
    return STATUS_CODES.get(status, STATUS_CODES[255])


class APNsError(Exception):
    """ Base class for all errors raised by this package. """


class CertificateError(APNsError):
    """ Provider's certificate bundle can not be used. """


class CertificateParseError(CertificateError):
    """ No usable certificate block in the bundle. """


class KeyParseError(CertificateError):
    """ No usable private key block in the bundle. """


class DecryptionError(CertificateError):
    """ Private key is encrypted and the passphrase is missing or wrong. """


class ConnectionError(APNsError, builtins.ConnectionError):
    """ Failed to dial, handshake or verify the remote end. """


class ReadWriteError(APNsError):
    """ Stream level IO failure on an open connection. """


class ReadTimeoutError(ReadWriteError):
    """ Read deadline elapsed before the requested bytes arrived. """


class StreamClosedError(ReadWriteError):
    """ The other end has closed the stream, or the connection is closed. """


class WriteError(ReadWriteError):
    """ Payload could not be written completely. """


class ProtocolError(APNsError):
    """ Data can not be expressed in, or parsed from, the wire format. """


class InvalidTokenError(ProtocolError):
    """ Device token is not a 32 byte hex string. """


class PayloadTooLargeError(ProtocolError):
    """ Serialized JSON payload exceeds the maximum payload size. """


class InvalidPayloadError(ProtocolError):
    """ Payload is not JSON serializable or a frame field is out of range. """


class DeliveryStatusError(APNsError):
    """ Notification rejected by the gateway with an error-response status. """

    def __init__(self, status, identifier=None):
        self.status = status
        self.identifier = identifier
        super(DeliveryStatusError, self).__init__(status_message(status))

    @property
    def message(self):
        """ Explanation of the status code. """
        return self.args[0]
