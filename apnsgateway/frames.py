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

import time
import json
import random
import binascii
import calendar
import datetime
from collections import namedtuple
from struct import pack, unpack, error as StructError

from apnsgateway import errors
from apnsgateway.errors import STATUS_CODES, status_message


__all__ = ('MAX_PAYLOAD_SIZE', 'TOKEN_SIZE', 'ERROR_RESPONSE_SIZE',
           'FEEDBACK_TUPLE_SIZE', 'STATUS_CODES', 'status_message', 'Alert',
           'Payload', 'Notification', 'ErrorResponse', 'Device',
           'decode_error_response', 'decode_feedback_tuple')


# The maximum size allowed for a notification payload.
MAX_PAYLOAD_SIZE = 2048

# Device token size in binary form.
TOKEN_SIZE = 32

# |COMMAND|STATUS|IDENTIFIER|
ERROR_RESPONSE_SIZE = 6
ERROR_RESPONSE_COMMAND = 8

# |TIMESTAMP|TOKENLEN|TOKEN|
FEEDBACK_TUPLE_SIZE = 38

NOTIFICATION_COMMAND = 2

# frame item identifiers
ITEM_DEVICE_TOKEN = 1
ITEM_PAYLOAD = 2
ITEM_IDENTIFIER = 3
ITEM_EXPIRATION = 4
ITEM_PRIORITY = 5

# send the notification immediately
PRIORITY_IMMEDIATE = 10


class Alert(object):
    """ Structured alert dictionary. """
    # attribute -> JSON key
    FIELDS = (
        ('title', 'title'),
        ('body', 'body'),
        ('title_loc_key', 'title-loc-key'),
        ('title_loc_args', 'title-loc-args'),
        ('action_loc_key', 'action-loc-key'),
        ('loc_key', 'loc-key'),
        ('loc_args', 'loc-args'),
        ('launch_image', 'launch-image'),
    )

    def __init__(self, title=None, body=None, title_loc_key=None, title_loc_args=None,
                 action_loc_key=None, loc_key=None, loc_args=None, launch_image=None):
        self.title = title
        self.body = body
        self.title_loc_key = title_loc_key
        self.title_loc_args = title_loc_args
        self.action_loc_key = action_loc_key
        self.loc_key = loc_key
        self.loc_args = loc_args
        self.launch_image = launch_image

    def to_dict(self):
        """ Returns JSON compatible ``dict``, empty fields are omitted. """
        ret = {}
        for attr, key in self.FIELDS:
            value = getattr(self, attr)
            if value:
                ret[key] = value

        return ret


class Payload(object):
    """ The ``aps`` dictionary of the notification payload. """
    # badge value that is sent as 0 instead of being omitted
    BADGE_ZERO = -1

    def __init__(self, alert=None, badge=None, sound=None, content_available=None):
        """ The ``aps`` dictionary.

            :Arguments:
                - `alert` (str or :class:`Alert`): the message.
                - `badge` (int): badge number over the application icon, ``None``
                  to leave the badge untouched, ``0`` or ``-1`` to clear it.
                - `sound` (str): sound file to play on arrival.
                - `content_available` (int): 1 to wake up the application in
                  the background.
        """
        self.alert = alert
        self.badge = badge
        self.sound = sound
        self.content_available = content_available

    def to_dict(self):
        """ Returns JSON compatible ``dict``, empty fields are omitted. """
        ret = {}
        alert = self.alert
        if isinstance(alert, Alert):
            alert = alert.to_dict()

        if alert:
            ret['alert'] = alert

        if self.badge is not None:
            ret['badge'] = 0 if self.badge == self.BADGE_ZERO else int(self.badge)

        if self.sound:
            ret['sound'] = str(self.sound)

        if self.content_available:
            ret['content-available'] = int(self.content_available)

        return ret


def _json_default(obj):
    if hasattr(obj, 'to_dict'):
        return obj.to_dict()

    raise TypeError("Object of type {0} is not JSON serializable".format(type(obj).__name__))


def _timestamp(value):
    """ Convert int, datetime or timedelta to UTC epoch seconds. """
    if value is None:
        return 0

    if isinstance(value, datetime.timedelta):
        return int(time.time() + value.total_seconds())

    if isinstance(value, datetime.datetime):
        if value.tzinfo is not None:
            return int(value.timestamp())

        # naive datetime is assumed to be UTC
        return calendar.timegm(value.utctimetuple())

    return int(value)


class Notification(object):
    """ Push notification to a single device. """
    # JSON serialization parameters. Assume UTF-8 by default.
    json_parameters = {
        'separators': (',', ':'),
        'ensure_ascii': False,
        'default': _json_default,
    }

    def __init__(self, device_token, payload=None, identifier=None, expiration=None,
                 priority=PRIORITY_IMMEDIATE):
        """ Push notification to a single device.

            :Arguments:
                - `device_token` (str): hex encoded 32 byte device token.
                - `payload` (dict or :class:`Payload`): complete payload, or
                  just the ``aps`` dictionary.
                - `identifier` (int): opaque identifier, random if omitted.
                  :func:`APNs.push` replaces it with the batch position.
                - `expiration` (int or datetime or timedelta): when the
                  notification may be discarded, 0 (default) means never store.
                - `priority` (int): 10 to send immediately, 5 to save power.
        """
        self.device_token = device_token
        self.payload = {}
        if isinstance(payload, Payload):
            self.add_payload(payload)
        elif payload:
            self.payload.update(payload)

        if identifier is None:
            identifier = random.randint(0, 0x7FFFFFFF)

        self.identifier = identifier
        self.expiration = _timestamp(expiration)
        self.priority = priority
        self.sent = False
        self.error_code = None

    def __repr__(self):
        return "<Notification #{0} {1} sent={2}>".format(self.identifier, self.device_token, self.sent)

    def add_payload(self, payload):
        """ Set the ``aps`` dictionary. """
        self.payload['aps'] = payload

    def set_payload_value(self, key, value):
        """ Set custom payload key next to ``aps``. """
        self.payload[key] = value

    @property
    def error(self):
        """ :class:`DeliveryStatusError` reported by the gateway or None. """
        if self.error_code is None:
            return None

        return errors.DeliveryStatusError(self.error_code, self.identifier)

    def get_token(self):
        """ Returns device token in binary form. """
        try:
            token = binascii.unhexlify(self.device_token)
        except (TypeError, ValueError) as exc:
            raise errors.InvalidTokenError("Device token is not a hex string: {0!r}".format(self.device_token)) from exc

        if len(token) != TOKEN_SIZE:
            raise errors.InvalidTokenError("Device token must be {0} bytes, got {1}".format(TOKEN_SIZE, len(token)))

        return token

    def to_json(self):
        """ Convert payload to JSON, acceptable by APNs. Returns byte string. """
        try:
            ret = json.dumps(self.payload, **self.json_parameters)
        except (TypeError, ValueError) as exc:
            raise errors.InvalidPayloadError(str(exc)) from exc

        return ret.encode("utf-8")

    def to_binary(self):
        """ Serialize to the notification frame.

            |COMMAND|FRAMELEN|{TOKEN}|{PAYLOAD}|{IDENTIFIER}|{EXPIRATION}|{PRIORITY}|

            each item is |ITEMID|ITEMLEN|DATA|
        """
        token = self.get_token()
        payload = self.to_json()
        if len(payload) > MAX_PAYLOAD_SIZE:
            raise errors.PayloadTooLargeError(
                "Payload is {0} bytes, maximum is {1}".format(len(payload), MAX_PAYLOAD_SIZE))

        try:
            items = b"".join((
                pack(">BH%ss" % len(token), ITEM_DEVICE_TOKEN, len(token), token),
                pack(">BH%ss" % len(payload), ITEM_PAYLOAD, len(payload), payload),
                pack(">BHi", ITEM_IDENTIFIER, 4, self.identifier),
                pack(">BHI", ITEM_EXPIRATION, 4, self.expiration),
                pack(">BHB", ITEM_PRIORITY, 1, self.priority),
            ))
        except StructError as exc:
            raise errors.InvalidPayloadError("Frame field out of range: {0}".format(exc)) from exc

        return pack(">BI", NOTIFICATION_COMMAND, len(items)) + items


class ErrorResponse(namedtuple('ErrorResponse', ('command', 'status', 'identifier'))):
    """ Error-response packet sent by the gateway before it drops the connection. """
    __slots__ = ()

    @property
    def message(self):
        return status_message(self.status)

    def to_error(self):
        return errors.DeliveryStatusError(self.status, self.identifier)


def decode_error_response(data):
    """ Parse 6 byte error-response packet. Command byte is not checked. """
    if len(data) != ERROR_RESPONSE_SIZE:
        raise errors.ProtocolError("Error response must be {0} bytes, got {1}".format(ERROR_RESPONSE_SIZE, len(data)))

    return ErrorResponse(*unpack(">BBi", data))


class Device(namedtuple('Device', ('token', 'timestamp'))):
    """ Device that is no longer registered for notifications. """
    __slots__ = ()

    @property
    def when(self):
        """ Timestamp as UTC ``datetime``. """
        return datetime.datetime.fromtimestamp(self.timestamp, datetime.timezone.utc)

    def to_dict(self):
        return {'token': self.token, 'timestamp': self.timestamp}

    def to_json(self):
        return json.dumps(self.to_dict(), indent=2)


def decode_feedback_tuple(data):
    """ Parse 38 byte feedback tuple. """
    if len(data) != FEEDBACK_TUPLE_SIZE:
        raise errors.ProtocolError("Feedback tuple must be {0} bytes, got {1}".format(FEEDBACK_TUPLE_SIZE, len(data)))

    # token length is informational, token is always 32 bytes
    timestamp, _, token = unpack(">IH%ss" % TOKEN_SIZE, data)
    return Device(binascii.hexlify(token).decode("ascii"), timestamp)
