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

import re
import time
import queue
import socket
import select
import logging
import ipaddress
import threading
from collections import namedtuple

import OpenSSL
import service_identity
import service_identity.pyopenssl

from apnsgateway import errors
from apnsgateway.frames import (ERROR_RESPONSE_SIZE, ERROR_RESPONSE_COMMAND, FEEDBACK_TUPLE_SIZE,
                                decode_error_response, decode_feedback_tuple, status_message)


__all__ = ('Certificate', 'Connection', 'APNs', 'Result', 'Failure', 'Done',
           'Stalled', 'Broken', 'Closed', 'Crashed')


log = logging.getLogger(__name__)

# -----BEGIN <TYPE>-----\n...\n-----END <TYPE>-----
_PEM_BLOCK = re.compile(br"-----BEGIN ([A-Z0-9 ]+)-----\r?\n.*?-----END \1-----", re.DOTALL)


def _pem_blocks(data):
    """ Yields ``(type, block)`` for every PEM block in data. """
    for match in _PEM_BLOCK.finditer(data):
        yield match.group(1).decode("ascii"), match.group(0) + b"\n"


def _is_encrypted(block_type, block):
    return block_type == "ENCRYPTED PRIVATE KEY" or b"Proc-Type: 4,ENCRYPTED" in block


class Certificate(object):
    """ Certificate with private key. """

    def __init__(self, cert_string, passphrase=None):
        """ Provider's certificate and private key.

            Export your push certificate together with the private key in PEM
            format. The certificate is enclosed in ``BEGIN/END CERTIFICATE``
            strings and the private key in a ``BEGIN/END ... PRIVATE KEY``
            section. Only the first block of each kind is used, everything
            else in the bundle is ignored.

            .. note::
                Reading the bundle from disk and asking the user for the
                passphrase is up to you. This class never touches the disk
                and never prompts.

            :Arguments:
                - `cert_string` (bytes): certificate and private key in PEM format.
                - `passphrase` (bytes or str): passphrase for your private key.
        """
        if isinstance(cert_string, str):
            cert_string = cert_string.encode("ascii")

        if isinstance(passphrase, str):
            passphrase = passphrase.encode("utf-8")

        cert_block = None
        key_type = key_block = None
        for block_type, block in _pem_blocks(cert_string):
            if cert_block is None and block_type == "CERTIFICATE":
                cert_block = block
            elif key_block is None and block_type.endswith("PRIVATE KEY"):
                key_type, key_block = block_type, block

        if cert_block is None:
            raise errors.CertificateParseError("Failed to parse certificate data")

        if key_block is None:
            raise errors.KeyParseError("Failed to parse key data")

        try:
            self._cert = OpenSSL.crypto.load_certificate(OpenSSL.crypto.FILETYPE_PEM, cert_block)
        except OpenSSL.crypto.Error as exc:
            raise errors.CertificateParseError("Failed to parse certificate data") from exc

        if _is_encrypted(key_type, key_block):
            if not passphrase:
                raise errors.DecryptionError("Failed to decrypt: passphrase required")

            try:
                self._key = OpenSSL.crypto.load_privatekey(OpenSSL.crypto.FILETYPE_PEM, key_block, passphrase)
            except OpenSSL.crypto.Error as exc:
                raise errors.DecryptionError("Failed to decrypt: wrong passphrase") from exc
        else:
            try:
                self._key = OpenSSL.crypto.load_privatekey(OpenSSL.crypto.FILETYPE_PEM, key_block)
            except OpenSSL.crypto.Error as exc:
                raise errors.KeyParseError("Failed to parse key data") from exc

        self._context = OpenSSL.SSL.Context(OpenSSL.SSL.TLS_CLIENT_METHOD)
        try:
            self._context.use_certificate(self._cert.to_cryptography())
            self._context.use_privatekey(self._key.to_cryptography_key())
            # check if we are not passed some garbage
            self._context.check_privatekey()
        except OpenSSL.SSL.Error as exc:
            raise errors.KeyParseError("Private key does not match certificate") from exc

        # used to compare certificates.
        self._equality = OpenSSL.crypto.dump_certificate(OpenSSL.crypto.FILETYPE_PEM, self._cert)

    @property
    def certificate(self):
        """ The ``OpenSSL.crypto.X509`` certificate. """
        return self._cert

    @property
    def private_key(self):
        """ The ``OpenSSL.crypto.PKey`` private key. """
        return self._key

    def get_context(self):
        """ Returns SSL context instance.

            You may use that context to specify required verification level,
            trusted CA's etc.
        """
        return self._context

    def __hash__(self):
        return hash(self._equality)

    def __eq__(self, other):
        if isinstance(other, Certificate):
            return self._equality == other._equality

        return False


def verify_peer(connection, host):
    """ Check the peer certificate of a handshaked OpenSSL connection is issued for host.

        Host may be a DNS name or an IP address. Only subjectAltName entries
        are trusted, the common name is ignored.

        :Raises:
            :class:`ConnectionError` if the certificate does not match.
    """
    if connection.get_peer_certificate() is None:
        raise errors.ConnectionError("No certificate presented by {0}".format(host))

    try:
        ipaddress.ip_address(host)
        verify = service_identity.pyopenssl.verify_ip_address
    except ValueError:
        verify = service_identity.pyopenssl.verify_hostname

    try:
        verify(connection, host)
    except (service_identity.VerificationError, service_identity.CertificateError) as exc:
        raise errors.ConnectionError("Certificate does not match host {0}: {1}".format(host, exc)) from exc


class Connection(object):
    """ Connection to APNs. """
    # Verify peer certificate against system CAs and the host name.
    verify = True

    # Seconds to dial and complete the TLS handshake.
    connect_timeout = 10.0

    # Maximum time to sleep in select, so closed connections are noticed.
    poll_interval = 0.5

    def __init__(self, address, certificate):
        """ Connection to APNs.

            One thread may read while another one writes. Every call into
            OpenSSL is non-blocking and serialized by an internal lock,
            waiting for the socket happens outside the lock.

            :Arguments:
                - `address` (tuple): address as (host, port) tuple.
                - `certificate` (:class:`Certificate`): provider's certificate.
        """
        self._address = address
        self._certificate = certificate
        self._socket = None
        self._connection = None
        self._readbuf = b""
        self._deadline = None
        self._lock = threading.Lock()

    @property
    def address(self):
        """ Target address. """
        return self._address

    @property
    def certificate(self):
        """ Provider's certificate. """
        return self._certificate

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        self.close()

    def is_closed(self):
        """ Returns True if this connection is closed.

            .. note:
                If other end closes connection by itself, then this connection will
                report open until next IO operation.
        """
        return self._socket is None

    def _create_socket(self):
        """ Dial plain TCP socket. Hook that you may override. """
        return socket.create_connection(self._address, timeout=self.connect_timeout)

    def _create_openssl_connection(self):
        """ Create new OpenSSL connection. Hook that you may override. """
        context = self._certificate.get_context()
        if self.verify:
            context.set_verify(OpenSSL.SSL.VERIFY_PEER, lambda conn, cert, errno, depth, ok: bool(ok))
            context.set_default_verify_paths()

        # non-blocking from now on, handshake and IO wait in select
        self._socket.setblocking(False)
        connection = OpenSSL.SSL.Connection(context, self._socket)
        connection.set_tlsext_host_name(self._address[0].encode("idna"))
        connection.set_connect_state()
        return connection

    def _connect_and_handshake(self):
        """ SSL handshake and peer verification. Hook that you may override. """
        deadline = time.monotonic() + self.connect_timeout
        while True:
            try:
                self._connection.do_handshake()
                break
            except OpenSSL.SSL.WantReadError:
                ready = self._wait(False, deadline)
            except OpenSSL.SSL.WantWriteError:
                ready = self._wait(True, deadline)

            if not ready:
                raise errors.ConnectionError("TLS handshake with {0}:{1} timed out".format(*self._address))

        if self.verify:
            verify_peer(self._connection, self._address[0])

    def open(self):
        """ Dial, handshake and verify the remote end. """
        if not self.is_closed():
            return

        log.debug("Connecting to %s:%s", *self._address)
        try:
            self._socket = self._create_socket()
            self._connection = self._create_openssl_connection()
            self._connect_and_handshake()
        except errors.ConnectionError:
            self.close()
            raise
        except (OSError, OpenSSL.SSL.Error, errors.ReadWriteError) as exc:
            self.close()
            raise errors.ConnectionError("Failed to connect to {0}:{1}: {2}".format(
                self._address[0], self._address[1], exc)) from exc

        self._readbuf = b""
        self._deadline = None

    def close(self):
        """ Close this connection. Does nothing if already closed. """
        with self._lock:
            sock, connection = self._socket, self._connection
            self._socket = None
            self._connection = None
            self._readbuf = b""

        if sock is None:
            return

        if connection is not None:
            try:
                # tell SSL socket we are done
                connection.shutdown()
            except OpenSSL.SSL.Error:
                pass

        try:
            # wakes up threads waiting in select
            sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass

        sock.close()
        log.debug("Closed connection to %s:%s", *self._address)

    def set_read_deadline(self, deadline):
        """ Bound following reads by ``time.monotonic()`` instant, None blocks forever. """
        self._deadline = deadline

    def _wait(self, write, deadline):
        """ Wait until socket is ready. Returns False if deadline elapsed. """
        while True:
            towait = self.poll_interval
            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return False

                towait = min(towait, remaining)

            sock = self._socket
            if sock is None:
                raise errors.StreamClosedError("Connection is closed")

            try:
                if write:
                    _, ready, _ = select.select((), (sock, ), (), towait)
                else:
                    ready, _, _ = select.select((sock, ), (), (), towait)
            except (OSError, ValueError) as exc:
                # socket closed by another thread
                raise errors.StreamClosedError("Connection is closed") from exc

            if ready:
                return True

    def read(self, size):
        """ Blocking read of exactly ``size`` bytes.

            Bytes received before the deadline elapsed are kept for the next
            read, they are never returned as a partial result.
        """
        deadline = self._deadline
        while len(self._readbuf) < size:
            want_write = False
            with self._lock:
                if self._connection is None:
                    raise errors.StreamClosedError("Connection is closed")

                try:
                    chunk = self._connection.recv(max(size - len(self._readbuf), 256))
                except OpenSSL.SSL.WantReadError:
                    chunk = None
                except OpenSSL.SSL.WantWriteError:
                    chunk = None
                    want_write = True
                except OpenSSL.SSL.ZeroReturnError as exc:
                    # SSL protocol alerted close. We have a nice shutdown here.
                    raise errors.StreamClosedError("Connection closed by remote end") from exc
                except OpenSSL.SSL.Error as exc:
                    raise errors.StreamClosedError("Connection failed: {0}".format(exc)) from exc

                if chunk is not None:
                    if not chunk:
                        raise errors.StreamClosedError("Connection closed by remote end")

                    self._readbuf += chunk
                    continue

            if not self._wait(want_write, deadline):
                raise errors.ReadTimeoutError("No data within read deadline")

        ret, self._readbuf = self._readbuf[:size], self._readbuf[size:]
        return ret

    def write(self, data):
        """ Blocking write of the whole chunk. """
        offset = 0
        while offset < len(data):
            want_read = False
            with self._lock:
                if self._connection is None:
                    raise errors.WriteError("Connection is closed")

                try:
                    offset += self._connection.send(data[offset:])
                    continue
                except OpenSSL.SSL.WantWriteError:
                    pass
                except OpenSSL.SSL.WantReadError:
                    want_read = True
                except OpenSSL.SSL.Error as exc:
                    # underlying connection has been closed or failed
                    raise errors.WriteError("Write failed: {0}".format(exc)) from exc

            try:
                self._wait(not want_read, None)
            except errors.StreamClosedError as exc:
                raise errors.WriteError("Connection is closed") from exc


# Outcomes of one delivery round, reported by the workers to APNs.push.
# gateway rejected notification #identifier with status
Failure = namedtuple('Failure', ('status', 'identifier'))
# end of batch reached and no error arrived within the inactivity window
Done = namedtuple('Done', ('written', ))
# no work arrived within the inactivity window
Stalled = namedtuple('Stalled', ('written', ))
# write of notification #identifier failed, connection is dead
Broken = namedtuple('Broken', ('identifier', ))
# response stream was closed without error-response
Closed = namedtuple('Closed', ())
# worker died on unexpected exception
Crashed = namedtuple('Crashed', ('exception', ))

# work queue markers
_END = object()
_STOP = object()


class _Round(object):
    """ Workers and channels of a single connection lifetime. """

    def __init__(self, connection, slots):
        self.connection = connection
        # notifications indexed by identifier
        self.slots = slots
        self.work = queue.Queue()
        self.outcomes = queue.Queue()
        self.stopped = threading.Event()
        self.threads = []

    def start(self, *targets):
        for target in targets:
            thread = threading.Thread(target=target, args=(self, ), name="apns-" + target.__name__.strip("_"))
            thread.daemon = True
            thread.start()
            self.threads.append(thread)

    def stop(self):
        """ Stop workers and close the connection. Returns once workers are gone. """
        self.stopped.set()
        self.work.put(_STOP)
        self.connection.close()
        for thread in self.threads:
            thread.join()


class APNs(object):
    """ APNs client. """
    # Connection wrapper class to use
    connection_class = Connection

    # Default APNs addresses.
    ADDRESSES = {
        "push_sandbox": ("gateway.sandbox.push.apple.com", 2195),
        "push_production": ("gateway.push.apple.com", 2195),
        "feedback_sandbox": ("feedback.sandbox.push.apple.com", 2196),
        "feedback_production": ("feedback.push.apple.com", 2196),
    }

    def __init__(self, certificate, sandbox=False, timeout=2.0, inactivity=3.0):
        """ APNs client.

            APNs protocol does not define a *success* message. The gateway
            reports at most one failed notification per connection and then
            drops the connection. So, in order to be sure the batch was
            successfully processed, we have to wait for any response after
            the last notification is written. Every push will take time
            needed for sending everything plus ``inactivity``.

            :Arguments:
                - `certificate` (:class:`Certificate`): provider's certificate.
                - `sandbox` (bool): talk to development environment.
                - `timeout` (float): read deadline in seconds.
                - `inactivity` (float): how long to wait for an error response
                  after the last notification, in seconds.
        """
        self.certificate = certificate
        self.sandbox = sandbox
        self.timeout = timeout
        self.inactivity = inactivity

    @property
    def gateway_address(self):
        return self.ADDRESSES["push_sandbox" if self.sandbox else "push_production"]

    @property
    def feedback_address(self):
        return self.ADDRESSES["feedback_sandbox" if self.sandbox else "feedback_production"]

    def _open(self, address):
        connection = self.connection_class(address, self.certificate)
        connection.open()
        return connection

    def push(self, notifications):
        """ Send the batch of notifications.

            The method will block until the whole batch is sent. Every
            notification gets its position in the batch as identifier, on
            return its ``sent`` and ``error_code`` fields tell what happened.

            If the gateway rejects a notification, then the connection is
            reopened and everything after the rejected notification is sent
            again. Notifications before it are never sent twice.

            :Returns:
                :class:`Result` object with operation results.

            :Raises:
                :class:`ConnectionError` if the first connection can not be
                established.
        """
        notifications = list(notifications)
        if not notifications:
            return Result(notifications)

        for idx, notification in enumerate(notifications):
            notification.identifier = idx
            notification.sent = False
            notification.error_code = None

        # may raise all kinds of connection errors
        connection = self._open(self.gateway_address)

        pending = list(range(len(notifications)))
        try:
            while pending:
                failure = self._deliver(connection, notifications, pending)
                if failure is None:
                    break

                failed = notifications[failure.identifier]
                failed.sent = False
                failed.error_code = failure.status
                log.warning("Notification #%d to %s rejected: %s", failure.identifier,
                            failed.device_token, status_message(failure.status))

                pending = list(range(failure.identifier + 1, len(notifications)))
                for idx in pending:
                    notifications[idx].sent = False

                if not pending:
                    break

                try:
                    connection = self._open(self.gateway_address)
                except errors.ConnectionError as exc:
                    log.warning("Reconnect failed, %d notifications left unsent: %s", len(pending), exc)
                    break

                log.info("Resending %d notifications from #%d", len(pending), pending[0])
        finally:
            connection.close()

        result = Result(notifications)
        log.info("Pushed %d of %d notifications", len(result.sent), len(notifications))
        return result

    def _deliver(self, connection, notifications, pending):
        """ Run one round over the connection.

            Returns :class:`Failure` that must be recovered from, or None when
            the round is over.
        """
        rnd = _Round(connection, notifications)
        rnd.start(self._send_worker, self._response_worker)

        try:
            for idx in pending:
                rnd.work.put(idx)

            rnd.work.put(_END)

            broken = False
            while True:
                try:
                    outcome = rnd.outcomes.get(timeout=self.timeout if broken else None)
                except queue.Empty:
                    log.warning("Connection broke without error response")
                    return None

                if isinstance(outcome, Failure):
                    if pending[0] <= outcome.identifier <= pending[-1]:
                        return outcome
                    else:
                        log.warning("Ignoring error response for unknown notification #%d", outcome.identifier)
                elif isinstance(outcome, (Done, Stalled)):
                    if isinstance(outcome, Stalled) or outcome.written < len(pending):
                        log.debug("Round ended with %d of %d notifications written", outcome.written, len(pending))

                    return None
                elif isinstance(outcome, Broken):
                    # wait for error response explaining why
                    broken = True
                elif isinstance(outcome, Closed):
                    if broken:
                        log.warning("Connection closed without error response")
                        return None
                elif isinstance(outcome, Crashed):
                    raise outcome.exception
        finally:
            rnd.stop()

    def _send_worker(self, rnd):
        written = 0
        try:
            while not rnd.stopped.is_set():
                try:
                    idx = rnd.work.get(timeout=self.inactivity)
                except queue.Empty:
                    rnd.outcomes.put(Stalled(written))
                    return

                if idx is _STOP:
                    return

                if idx is _END:
                    # wait for late error response, unless stopped
                    if not rnd.stopped.wait(self.inactivity):
                        rnd.outcomes.put(Done(written))
                    return

                notification = rnd.slots[idx]
                try:
                    frame = notification.to_binary()
                except errors.ProtocolError as exc:
                    log.warning("Skipping notification #%d: %s", idx, exc)
                    continue

                try:
                    rnd.connection.write(frame)
                except errors.ReadWriteError as exc:
                    log.debug("Write of notification #%d failed: %s", idx, exc)
                    rnd.outcomes.put(Broken(idx))
                    return

                notification.sent = True
                written += 1
                log.debug("Sent notification #%d", idx)
        except Exception as exc:
            log.exception("Send worker crashed")
            rnd.outcomes.put(Crashed(exc))

    def _response_worker(self, rnd):
        # Error-response packet (6 bytes)
        # The packet has a command value of 8 (1 byte) followed
        # by a status code (1 byte) and the notification
        # identifier (4 bytes) of the malformed notification.
        try:
            while not rnd.stopped.is_set():
                rnd.connection.set_read_deadline(time.monotonic() + self.timeout)
                try:
                    data = rnd.connection.read(ERROR_RESPONSE_SIZE)
                except errors.ReadTimeoutError:
                    continue
                except errors.ReadWriteError:
                    rnd.outcomes.put(Closed())
                    return

                response = decode_error_response(data)
                if response.command != ERROR_RESPONSE_COMMAND:
                    log.warning("Unexpected command %d in error response", response.command)

                rnd.outcomes.put(Failure(response.status, response.identifier))
                # gateway drops connection after error response
                return
        except Exception as exc:
            log.exception("Response worker crashed")
            rnd.outcomes.put(Crashed(exc))

    def feedback(self):
        """ Fetch feedback from APNs.

            The method returns generator of :class:`Device` records, denoting
            the timestamp when APNs has detected the device token is not
            available anymore, probably because application was uninstalled.
            You have to stop sending notifications to that device token unless
            it has been re-registered since reported timestamp.

            The feed ends on the first read failure, a timeout or the gateway
            closing the connection, which is how the feedback service says it
            is done. The connection is closed once the generator is exhausted
            or closed.

            Example::

                service = APNs(Certificate(pem_bytes), sandbox=True)
                for device in service.feedback():
                    print("Removing token", device.token)

            :Returns:
                generator over :class:`Device`
        """
        with self._open(self.feedback_address) as connection:
            while True:
                connection.set_read_deadline(time.monotonic() + self.timeout)
                try:
                    data = connection.read(FEEDBACK_TUPLE_SIZE)
                except errors.ReadWriteError as exc:
                    log.debug("Feedback ended: %s", exc)
                    break

                yield decode_feedback_tuple(data)

    def unregistered_devices(self):
        """ Returns list of :class:`Device` from the feedback service. """
        return list(self.feedback())


class Result(object):
    """ Result of push operation. """

    def __init__(self, notifications):
        self.notifications = notifications

    @property
    def sent(self):
        """ Notifications accepted by the gateway. """
        return [n for n in self.notifications if n.sent]

    @property
    def unsent(self):
        """ Notifications that were not delivered, for whatever reason. """
        return [n for n in self.notifications if not n.sent]

    @property
    def failed(self):
        """ Reports rejected tokens as ``{token : (reason, explanation)}`` mapping.

            Current APNs protocol bails out on first failed notification, but
            since the batch is resumed after each failure, any number of
            notifications may be rejected.
        """
        return dict((n.device_token, (n.error_code, status_message(n.error_code)))
                    for n in self.notifications if n.error_code is not None)

    def needs_retry(self):
        """ Returns True if there are notifications that could be retried. """
        return bool(self.retry())

    def retry(self):
        """ Returns unsent notifications that were not rejected by the gateway.

            These were left behind because the connection could not be
            reopened, or because the connection broke without explanation.
        """
        return [n for n in self.notifications if not n.sent and n.error_code is None]
