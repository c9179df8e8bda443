#!/usr/bin/env python
#
# Let's Encrypt certificate client.
#
# Copyright (C) 2015  Jakub Warmuz
#
# This program is free software: you can redistribute it and/or modify
# it under the terms of the GNU General Public License as published by
# the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.
#
# This program is distributed in the hope that it will be useful,
# but WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the
# GNU General Public License for more details.
#
# You should have received a copy of the GNU General Public License
# along with this program.  If not, see <http://www.gnu.org/licenses/>.
#
"""ACME client obtaining certificates through the http-01 challenge."""
import abc
import argparse
import collections
import contextlib
import datetime
import doctest
import errno
import hashlib
import logging
import os
import re
import shlex
import shutil
import sys
import tempfile
import threading
import time
import traceback
import unittest
from unittest import mock

from cryptography import x509
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID

import josepy as jose
from josepy import errors as jose_errors
import pytz
import requests

from acme import client as acme_client
from acme import challenges
from acme import crypto_util
from acme import errors as acme_errors
from acme import messages


# pylint: disable=too-many-lines


logger = logging.getLogger(__name__)  # pylint: disable=invalid-name

VERSION = '0'
DEFAULT_USER_AGENT = 'letscert/' + VERSION

LE_PRODUCTION_URI = 'https://acme-v02.api.letsencrypt.org/directory'
DEFAULT_VALID_MIN = '30d'
DEFAULT_CHALLENGE_TIMEOUT = 90

DEFAULT_CERT_RSA_BITS = 2048
DEFAULT_ACCOUNT_KEY_SIZES = {'rsa': 4096, 'ecdsa': 256}
DEFAULT_PUBLIC_EXPONENT = 65537
MIN_RSA_BITS = 1024

EXIT_RENEWAL = EXIT_TESTS_OK = EXIT_REVOKE_OK = 0
EXIT_NO_RENEWAL = EXIT_NOT_REVOKED = EXIT_HELP_VERSION_OK = 1
EXIT_ERROR = 2


class Error(Exception):
    """letscert error."""


class ConfigurationError(Error):
    """Invalid options, detected before talking to the CA."""


class MissingWebrootError(ConfigurationError):
    """Some domains have no webroot."""


class UnsupportedKeySizeError(ConfigurationError):
    """Key type and size combination is not supported."""


class ConflictingKeyTypesError(ConfigurationError):
    """Both an RSA and an ECDSA certificate key were requested."""


class UnknownCurveError(ConfigurationError):
    """Elliptic curve is unknown or too weak."""


class InvalidDurationError(ConfigurationError):
    """Duration string could not be parsed."""


class ProtocolError(Error):
    """CA did not behave the way this client needs."""


class UnsupportedChallengeError(ProtocolError):
    """CA did not offer an http-01 challenge."""


class ChallengeWaitError(ProtocolError):
    """Waiting for challenge verification timed out or was cancelled."""


class IssuanceError(ProtocolError):
    """CA refused or failed to issue the certificate."""


class DomainMismatchError(Error):
    """Existing certificate does not cover the requested domains."""


class StateError(Error):
    """Operation is not possible with the loaded data."""


class FileIOError(Error):
    """File system failure."""


class UnitTestCase(unittest.TestCase):
    """letscert unit test case."""

    class AssertRaisesContext(object):
        """Context for assert_raises."""
        # pylint: disable=too-few-public-methods

        def __init__(self):
            self.error = None

    @contextlib.contextmanager
    def assert_raises(self, exc):
        """Assert raises context manager."""
        context = self.AssertRaisesContext()
        try:
            yield context
        except exc as error:
            context.error = error
        else:
            self.fail('Expected exception (%s) not raised' % exc)

    def assert_raises_regexp(self, exc, regexp, func, *args, **kwargs):
        """Assert raises that tests exception message against regexp."""
        with self.assert_raises(exc) as context:
            func(*args, **kwargs)
        msg = str(context.error)
        self.assertTrue(re.match(regexp, msg, re.DOTALL) is not None,
                        "Exception message (%s) doesn't match "
                        "regexp (%s)" % (msg, regexp))

    def assert_raises_error(self, *args, **kwargs):
        """Assert raises letscert error with given message."""
        self.assert_raises_regexp(Error, *args, **kwargs)

    @staticmethod
    def check_logs(level, pattern, func):
        """Check whether func logs a message matching pattern.

        ``pattern`` is a regular expression to match the logs against.
        ``func`` is the function to call.
        ``level`` is the logging level to set during the function call.

        Returns True if there is a match, False otherwise.
        """
        log_msgs = []

        class TestHandler(logging.Handler):
            """Log handler that saves logs in ``log_msgs``."""

            def emit(self, record):
                log_msgs.append(record.getMessage())

        handler = TestHandler(level=level)
        old_level = logger.level
        logger.setLevel(level)
        logger.addHandler(handler)

        try:
            func()
            for msg in log_msgs:
                if re.match(pattern, msg) is not None:
                    return True
            return False
        finally:
            logger.removeHandler(handler)
            logger.setLevel(old_level)


_PEM_RE_LABELCHAR = r'[\x21-\x2c\x2e-\x7e]'
_PEM_RE = re.compile(
    (r"""
^-----BEGIN\ ((?:%s(?:[- ]?%s)*)?)\s*-----$
.*?
^-----END\ \1-----\s*""" % (_PEM_RE_LABELCHAR, _PEM_RE_LABELCHAR)).encode(),
    re.DOTALL | re.MULTILINE | re.VERBOSE)


def split_pems(buf):
    r"""Split buffer comprised of PEM encoded (RFC 7468).

    >>> x = b'\n-----BEGIN FOO BAR-----\nfoo\nbar\n-----END FOO BAR-----'
    >>> len(list(split_pems(x * 3)))
    3
    >>> list(split_pems(b''))
    []
    """
    for match in _PEM_RE.finditer(buf):
        yield match.group(0)


class ValidityWindow(collections.namedtuple('ValidityWindow',
                                            'seconds string')):
    """Minimum validity of a certificate.

    Parsed from an integer optionally followed by a unit: ``m``
    (minutes), ``h`` (hours) or ``d`` (days). Without unit the number
    is a count of seconds.

    >>> ValidityWindow.parse('90').seconds
    90
    >>> ValidityWindow.parse('2h').seconds
    7200
    >>> ValidityWindow.parse('30d').seconds
    2592000
    >>> str(ValidityWindow.parse('30d'))
    '30d'
    """
    __slots__ = ()

    _RE = re.compile(r'(\d+)([mhd]?)\Z')
    MULTIPLIERS = {'': 1, 'm': 60, 'h': 60 * 60, 'd': 24 * 60 * 60}

    @classmethod
    def parse(cls, data):
        """Parse duration string."""
        match = cls._RE.match(data)
        if match is None:
            raise InvalidDurationError(
                'Invalid duration: %s (expected a number of seconds, '
                'optionally followed by m, h or d)' % data)
        number, unit = match.groups()
        return cls(seconds=int(number) * cls.MULTIPLIERS[unit], string=data)

    def __str__(self):
        return self.string


# prime curves only; certificate keys on smaller curves are refused
CURVES = dict((curve.name, curve) for curve in (
    ec.SECP192R1, ec.SECP224R1, ec.SECP256K1, ec.SECP256R1, ec.SECP384R1,
    ec.SECP521R1, ec.BrainpoolP256R1, ec.BrainpoolP384R1,
    ec.BrainpoolP512R1,
))
CURVE_ALIASES = {'prime192v1': 'secp192r1', 'prime256v1': 'secp256r1'}
MIN_CURVE_SIZE = 256

ACCOUNT_KEY_CURVES = {256: ec.SECP256R1, 384: ec.SECP384R1}
_EC_JWS_ALGS = {256: jose.ES256, 384: jose.ES384}


def acceptable_curves():
    """Names of the curves accepted for certificate keys."""
    return sorted(name for name, curve in CURVES.items()
                  if curve.key_size >= MIN_CURVE_SIZE)


def lookup_curve(name):
    """Get curve instance by name.

    OpenSSL names (e.g. ``prime256v1``) are accepted as well.

    Raises:
      UnknownCurveError: curve is unknown or smaller than 256 bits.
    """
    curve = CURVES.get(CURVE_ALIASES.get(name, name))
    if curve is None or curve.key_size < MIN_CURVE_SIZE:
        raise UnknownCurveError(
            'Unknown or unsupported curve: %s. Acceptable curves: %s.' % (
                name, ', '.join(acceptable_curves())))
    return curve()


def check_rsa_bits(bits):
    """Check RSA modulus size."""
    if bits < MIN_RSA_BITS:
        raise UnsupportedKeySizeError(
            'RSA keys must be at least %d bits, got %d' % (MIN_RSA_BITS, bits))


def check_account_key_params(key_type, key_size):
    """Check account key type and size before generating anything."""
    if key_type == 'rsa':
        if key_size is not None:
            check_rsa_bits(key_size)
    elif key_type == 'ecdsa':
        if key_size is not None and key_size not in ACCOUNT_KEY_CURVES:
            raise UnsupportedKeySizeError(
                'ECDSA account keys must be 256 or 384 bits, got %d' %
                key_size)
    else:
        raise ConfigurationError('Unsupported account key type: %s' % key_type)


def gen_account_key(key_type='rsa', key_size=None,
                    public_exponent=DEFAULT_PUBLIC_EXPONENT):
    """Generate an account key.

    Args:
      key_type: ``rsa`` or ``ecdsa``.
      key_size: RSA modulus size, or 256 (P-256) / 384 (P-384) for
        ECDSA. Defaults depend on `key_type`.
      public_exponent: RSA public exponent.

    Returns:
      Freshly generated key, wrapped in `josepy.JWK`.
    """
    check_account_key_params(key_type, key_size)
    if key_size is None:
        key_size = DEFAULT_ACCOUNT_KEY_SIZES[key_type]
    if key_type == 'ecdsa':
        return jose.JWKEC(key=ec.generate_private_key(
            ACCOUNT_KEY_CURVES[key_size]()))
    return jose.JWKRSA(key=rsa.generate_private_key(
        public_exponent=public_exponent, key_size=key_size))


def gen_pkey(bits=None, curve=None):
    """Generate a certificate private key.

    Args:
      bits: RSA modulus size, used when `curve` is not given.
      curve: Name of the elliptic curve for an ECDSA key.

    Returns:
      Freshly generated `cryptography` private key.
    """
    if curve is not None:
        return ec.generate_private_key(lookup_curve(curve))
    if bits is None:
        bits = DEFAULT_CERT_RSA_BITS
    check_rsa_bits(bits)
    return rsa.generate_private_key(
        public_exponent=DEFAULT_PUBLIC_EXPONENT, key_size=bits)


def jws_alg(account_key):
    """JWS signature algorithm matching the account key."""
    if isinstance(account_key, jose.JWKEC):
        size = account_key.key.curve.key_size
        if size not in _EC_JWS_ALGS:
            raise UnsupportedKeySizeError(
                'Unsupported ECDSA account key size: %d' % size)
        return _EC_JWS_ALGS[size]
    return jose.RS256


def gen_csr(pkey, domains):
    """Generate a PEM encoded CSR.

    Args:
      pkey: Private key.
      domains: List of domains included in the cert.

    Returns:
      PEM encoded CSR, as `bytes`.
    """
    assert domains, 'Must provide one or more hostnames for the CSR.'
    pem = pkey.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )
    return crypto_util.make_csr(pem, list(domains))


def cert_sans(cert):
    """DNS names from the subjectAltName extension of `cert`."""
    try:
        ext = cert.extensions.get_extension_for_class(
            x509.SubjectAlternativeName)
    except x509.ExtensionNotFound:
        return []
    return ext.value.get_values_for_type(x509.DNSName)


def comparable(component):
    """Comparable form of a certificate data component.

    `cryptography` private keys have no equality, so compare their DER
    serialization instead.
    """
    if isinstance(component, (rsa.RSAPrivateKey, ec.EllipticCurvePrivateKey)):
        return component.private_bytes(
            encoding=serialization.Encoding.DER,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        )
    return component


class CertificateMaterial(collections.namedtuple(
        'CertificateMaterial', 'account_key key cert chain')):
    """Certificate data handled by IO plugins.

    - `account_key`: private account key, an instance of `josepy.JWK`
    - `key`: certificate private key, a `cryptography` private key
    - `cert`: certificate, an instance of `cryptography.x509.Certificate`
    - `chain`: certificate chain, a list of `cryptography.x509.Certificate`

    Any component may be `None` if it was not created yet.
    """
    __slots__ = ()


EMPTY_MATERIAL = CertificateMaterial(
    account_key=None, key=None, cert=None, chain=None)


class X509Codec(object):
    """Load and dump keys and certificates.

    Args:
      encoding: `serialization.Encoding.PEM` or `serialization.Encoding.DER`.
    """

    def __init__(self, encoding=serialization.Encoding.PEM):
        self.encoding = encoding

    @property
    def pem(self):
        """Is this a PEM codec?"""
        return self.encoding == serialization.Encoding.PEM

    def load_key(self, data):
        """Load private key."""
        if self.pem:
            return serialization.load_pem_private_key(data, password=None)
        return serialization.load_der_private_key(data, password=None)

    def dump_key(self, key):
        """Dump private key."""
        return key.private_bytes(
            encoding=self.encoding,
            format=serialization.PrivateFormat.TraditionalOpenSSL,
            encryption_algorithm=serialization.NoEncryption(),
        )

    def load_cert(self, data):
        """Load certificate."""
        if self.pem:
            return x509.load_pem_x509_certificate(data)
        return x509.load_der_x509_certificate(data)

    def dump_cert(self, cert):
        """Dump certificate."""
        return cert.public_bytes(self.encoding)

    def load_certs(self, data):
        """Load concatenated PEM certificates."""
        return [self.load_cert(pem) for pem in split_pems(data)]

    def dump_certs(self, certs):
        """Dump certificates as concatenated PEM."""
        return b''.join(self.dump_cert(cert) for cert in certs)


class JWKCodec(object):
    """Load and dump JSON Web Keys."""

    @staticmethod
    def load_jwk(data):
        """Load JWK, `None` for an empty document."""
        if not data.strip():
            return None
        return jose.JWK.json_loads(data)

    @staticmethod
    def dump_jwk(jwk):
        """Dump JWK."""
        return jwk.json_dumps()


class IOPlugin(metaclass=abc.ABCMeta):
    """Input/output plugin.

    In case of any problems, `persisted`, `load` and `save` methods
    should raise `Error`, for which message will be displayed directly
    to the user through STDERR (in `main`).

    Args:
      path: Name of the plugin, which is also the file it handles.
      logger: Logger used by the plugin.
    """

    def __init__(self, path, logger=None):
        self.path = path
        self.logger = logger if logger is not None else logging.getLogger(
            __name__)

    @abc.abstractmethod
    def persisted(self):
        """Which data is persisted by this plugin?

        This method must be overridden in subclasses and must return
        `CertificateMaterial` with Boolean values indicating whether
        specific component is persisted by the plugin.
        """
        raise NotImplementedError()

    @abc.abstractmethod
    def load(self):
        """Load persisted data.

        This method must be overridden in subclasses and must return
        `CertificateMaterial`. For all non-persisted data it must set the
        corresponding component to `None`. If the data was not persisted
        previously, it must return `EMPTY_MATERIAL`.
        """
        raise NotImplementedError()

    @abc.abstractmethod
    def save(self, data):
        """Save data to file system.

        This method must be overridden in subclasses and must accept
        `CertificateMaterial`. It must store all persisted components and
        ignore all non-persisted components. It is guaranteed that all
        persisted components are not `None`.
        """
        raise NotImplementedError()

    def stage(self, data):
        """Prepare saving `data` without touching persisted data yet.

        `commit` or `discard` is later called with the returned value.
        By default nothing is prepared and `commit` calls `save`.
        """
        return data

    def commit(self, staged):
        """Persist what `stage` prepared."""
        self.save(staged)

    def discard(self, staged):
        """Drop what `stage` prepared."""


class FileIOPlugin(IOPlugin):
    """Plugin that saves/reads files on disk.

    Args:
      codec: Object encoding and decoding the file contents.
    """

    READ_MODE = 'rb'
    WRITE_MODE = 'wb'

    def __init__(self, path, codec, logger=None):
        super(FileIOPlugin, self).__init__(path, logger)
        self.codec = codec

    def load(self):
        self.logger.debug('Loading %s', self.path)
        try:
            with open(self.path, self.READ_MODE) as persist_file:
                content = persist_file.read()
        except OSError as error:
            if error.errno == errno.ENOENT:
                # file does not exist, so it was not persisted
                # previously
                return EMPTY_MATERIAL
            raise FileIOError('Error when loading %s: %s' % (
                self.path, error.strerror))
        try:
            return self.load_from_content(content)
        except (ValueError, jose_errors.Error) as error:
            raise Error('Could not load %s, the file might be empty or '
                        'corrupt: %s' % (self.path, error))

    @abc.abstractmethod
    def load_from_content(self, content):
        """Load from file contents.

        This method must be overridden in subclasses. It will be called
        with the contents of the file read from `path` and should return
        whatever `IOPlugin.load` is meant to return.
        """
        raise NotImplementedError()

    @abc.abstractmethod
    def dump(self, data):
        """Encode the persisted components of `data` as file contents."""
        raise NotImplementedError()

    def save(self, data):
        self.commit(self.stage(data))

    def stage(self, data):
        """Write the new contents to a temporary file next to `path`.

        Returns:
          Path of the temporary file, or `None` if `path` already holds
          the same contents.
        """
        content = self.dump(data)
        try:
            if os.path.exists(self.path):
                with open(self.path, self.READ_MODE) as persist_file:
                    if persist_file.read() == content:
                        self.logger.debug('%s is unchanged', self.path)
                        return None
            fd, tmp_path = tempfile.mkstemp(
                prefix='.%s.' % os.path.basename(self.path),
                dir=(os.path.dirname(self.path) or os.curdir))
            try:
                with os.fdopen(fd, self.WRITE_MODE) as tmp_file:
                    tmp_file.write(content)
            except OSError:
                os.remove(tmp_path)
                raise
        except OSError as error:
            self.logger.exception(error)
            raise FileIOError('Error when saving %s' % self.path)
        return tmp_path

    def commit(self, staged):
        """Move the staged temporary file over `path`."""
        if staged is None:
            return
        self.logger.info('Saving %s', self.path)
        try:
            os.replace(staged, self.path)
        except OSError as error:
            self.logger.exception(error)
            self.discard(staged)
            raise FileIOError('Error when saving %s' % self.path)

    def discard(self, staged):
        """Remove the staged temporary file."""
        if staged is None:
            return
        try:
            os.remove(staged)
        except OSError as error:
            if error.errno != errno.ENOENT:
                self.logger.warning('Could not remove %s: %s',
                                    staged, error.strerror)


class AccountKeyFile(FileIOPlugin):
    """Account key IO Plugin using JWK."""

    # this is not a binary file
    READ_MODE = 'r'
    WRITE_MODE = 'w'

    def persisted(self):
        return CertificateMaterial(
            account_key=True, key=False, cert=False, chain=False)

    def load_from_content(self, content):
        return EMPTY_MATERIAL._replace(account_key=self.codec.load_jwk(content))

    def dump(self, data):
        return self.codec.dump_jwk(data.account_key)


class KeyFile(FileIOPlugin):
    """Certificate private key file plugin."""

    def persisted(self):
        return CertificateMaterial(
            account_key=False, key=True, cert=False, chain=False)

    def load_from_content(self, content):
        return EMPTY_MATERIAL._replace(key=self.codec.load_key(content))

    def dump(self, data):
        return self.codec.dump_key(data.key)


class CertFile(FileIOPlugin):
    """Certificate file plugin."""

    def persisted(self):
        return CertificateMaterial(
            account_key=False, key=False, cert=True, chain=False)

    def load_from_content(self, content):
        return EMPTY_MATERIAL._replace(cert=self.codec.load_cert(content))

    def dump(self, data):
        return self.codec.dump_cert(data.cert)


class ChainFile(FileIOPlugin):
    """Certificate chain plugin."""

    def persisted(self):
        return CertificateMaterial(
            account_key=False, key=False, cert=False, chain=True)

    def load_from_content(self, content):
        return EMPTY_MATERIAL._replace(chain=self.codec.load_certs(content))

    def dump(self, data):
        return self.codec.dump_certs(data.chain)


class FullChainFile(ChainFile):
    """Full chain file plugin: certificate followed by its chain."""

    def persisted(self):
        return CertificateMaterial(
            account_key=False, key=False, cert=True, chain=True)

    def load_from_content(self, content):
        certs = self.codec.load_certs(content)
        if not certs:
            return EMPTY_MATERIAL
        return EMPTY_MATERIAL._replace(cert=certs[0], chain=certs[1:])

    def dump(self, data):
        return self.codec.dump_certs([data.cert] + list(data.chain))


def componentwise_or(first, second):
    """Componentwise OR.

    >>> componentwise_or((False, False), (False, False))
    (False, False)
    >>> componentwise_or((True, False), (False, False))
    (True, False)
    >>> componentwise_or((True, False), (False, True))
    (True, True)
    """
    return tuple(x or y for x, y in zip(first, second))


def merge_component(first, second, field):
    """Merge data from two plugins.

    >>> merge_component(None, 1, 'foo')
    1
    >>> merge_component(1, None, 'foo')
    1
    >>> merge_component(None, None, 'foo') is None
    True
    >>> merge_component(1, 2, 'foo')
    Traceback (most recent call last):
    ...
    Error: Some plugins returned conflicting data for the "foo" component
    """
    if (first is not None and second is not None and
            comparable(first) != comparable(second)):
        raise Error('Some plugins returned conflicting data for '
                    'the "%s" component' % field)
    return first if first is not None else second


class IOPluginRegistry(object):
    """Registry of IO plugins, indexed by their file name."""

    def __init__(self, logger=None):
        self.registered = {}
        self.logger = logger if logger is not None else logging.getLogger(
            __name__)

    def register(self, plugin):
        """Register IO plugin."""
        if (os.path.sep in plugin.path or '/' in plugin.path or
                plugin.path in ('', '.', '..')):
            raise Error('Plugin name should just be a file name, without '
                        'path: %r' % plugin.path)
        self.registered[plugin.path] = plugin
        return plugin

    def names(self):
        """Sorted names of the registered plugins."""
        return sorted(self.registered)

    def __getitem__(self, name):
        try:
            return self.registered[name]
        except KeyError:
            raise Error('Unknown IO plugin: %s' % name)

    def persisted(self, names):
        """Which components do the selected plugins persist?"""
        persisted = CertificateMaterial(
            account_key=False, key=False, cert=False, chain=False)
        for name in names:
            persisted = CertificateMaterial(*componentwise_or(
                persisted, self[name].persisted()))
        return persisted

    def check_persist_all(self, names):
        """Do plugins cover all components (account key/key/cert/chain)?"""
        not_persisted = [
            component
            for component, persist in self.persisted(names)._asdict().items()
            if not persist]
        if not_persisted:
            raise Error('Selected IO plugins do not cover the following '
                        'components: %s.' % ', '.join(not_persisted))

    def load(self, names):
        """Load existing data from disk.

        Returns:
          `CertificateMaterial` with all plugin data merged and sanity
          checked for coherence.
        """
        all_existing = EMPTY_MATERIAL
        for name in names:
            plugin = self[name]
            all_persisted = plugin.persisted()
            all_data = plugin.load()

            # Check that plugins obey the interface: "`not persisted`
            # implies `data is None`"
            if not all(persisted or data is None
                       for persisted, data in zip(all_persisted, all_data)):
                raise Error('IO plugin %s returned data it does not '
                            'persist' % name)

            all_existing = CertificateMaterial(*(
                merge_component(*data) for data in zip(
                    all_existing, all_data, all_data._fields)))
        return all_existing

    def save(self, names, data):
        """Persist data using all selected plugins.

        All plugins stage their data first, so that a plugin failing
        to write leaves every previously persisted file untouched.
        """
        staged = []
        try:
            for name in names:
                plugin = self[name]
                staged.append((plugin, plugin.stage(data)))
        except Error:
            for plugin, pending in staged:
                plugin.discard(pending)
            raise

        for index, (plugin, pending) in enumerate(staged):
            try:
                plugin.commit(pending)
            except Error:
                for later, later_pending in staged[index + 1:]:
                    later.discard(later_pending)
                raise


def default_registry(logger=None):
    """Create the registry with all file formats supported by letscert."""
    registry = IOPluginRegistry(logger)
    pem = X509Codec(serialization.Encoding.PEM)
    der = X509Codec(serialization.Encoding.DER)
    for plugin in (
            AccountKeyFile('account_key.json', JWKCodec(), logger),
            CertFile('cert.der', der, logger),
            CertFile('cert.pem', pem, logger),
            ChainFile('chain.pem', pem, logger),
            FullChainFile('fullchain.pem', pem, logger),
            KeyFile('key.der', der, logger),
            KeyFile('key.pem', pem, logger),
    ):
        registry.register(plugin)
    return registry


def sha256_of_uri_contents(uri, chunk_size=1024):
    """Get SHA256 of URI contents.

    >>> with mock.patch('requests.get') as mock_get:
    ...     sha256_of_uri_contents('https://example.com')
    'e3b0c44298fc1c149afbf4c8996fb92427ae41e4649b934ca495991b7852b855'
    """
    h = hashlib.sha256()  # pylint: disable=invalid-name
    response = requests.get(uri, stream=True)
    response.raise_for_status()
    for chunk in response.iter_content(chunk_size):
        h.update(chunk)
    return h.hexdigest()


def acme_client_for(account_key, server, user_agent):
    """Create ACME v2 client bound to `account_key` and `server`."""
    net = acme_client.ClientNetwork(
        account_key, alg=jws_alg(account_key), user_agent=user_agent)
    directory = acme_client.ClientV2.get_directory(server, net)
    return acme_client.ClientV2(directory, net=net)


class AcmeSession(object):
    """Holds the single registered ACME client of a run.

    Args:
      logger: Logger.
      client_factory: Callable taking account key, directory URI and
        user agent, returning an `acme.client.ClientV2`. Defaults to
        `acme_client_for`.
      user_agent: User-Agent sent in all HTTP requests.
      tos_sha256: Expected SHA-256 digest of the terms of service, or
        `None` to accept them without checking.
      agree_tos: Agree to the CA terms of service when registering.
    """

    def __init__(self, logger=None, client_factory=None,
                 user_agent=DEFAULT_USER_AGENT, tos_sha256=None,
                 agree_tos=True):
        self.logger = logger if logger is not None else logging.getLogger(
            __name__)
        self.client_factory = client_factory
        self.user_agent = user_agent
        self.tos_sha256 = tos_sha256
        self.agree_tos = agree_tos
        self.client = None

    def ensure_client(self, account_key, server, key_type='rsa',
                      key_size=None, email=None,
                      public_exponent=DEFAULT_PUBLIC_EXPONENT):
        """Create ACME client, register if necessary.

        Client is only created on first call, then it is cached: later
        calls return it no matter their arguments.
        """
        # pylint: disable=too-many-arguments
        if self.client is not None:
            return self.client

        if account_key is None:
            self.logger.info('Generating new account key')
            account_key = gen_account_key(key_type, key_size, public_exponent)

        factory = self.client_factory or acme_client_for
        self.logger.debug('Connecting to %s', server)
        client = factory(account_key, server, self.user_agent)

        if not email:
            self.logger.warning('--email was not provided; ACME CA will have '
                                'no way of contacting you.')
        self.register(client, email)
        self.client = client
        return client

    def register(self, client, email):
        """Register account key, recover the registration if it exists."""
        new_reg = messages.NewRegistration.from_data(email=email or None)

        meta = getattr(client.directory, 'meta', None)
        tos = getattr(meta, 'terms_of_service', None)
        if tos and self.agree_tos:
            self.check_tos(tos)
            self.logger.info('Agreeing to the CA terms of service: %s', tos)
            new_reg = new_reg.update(terms_of_service_agreed=True)

        try:
            regr = client.new_account(new_reg)
        except acme_errors.ConflictError as error:
            self.logger.debug('Account key already registered: %s',
                              error.location)
            regr = client.query_registration(messages.RegistrationResource(
                uri=error.location, body=new_reg))
        else:
            self.logger.info('Registered new account: %s', regr.uri)
        return regr

    def check_tos(self, uri):
        """Compare the terms of service digest with the expected one.

        Failing to fetch the document is not fatal, the CA requires the
        agreement anyway.
        """
        if self.tos_sha256 is None:
            return
        try:
            tos_hash = sha256_of_uri_contents(uri)
        except requests.RequestException as error:
            self.logger.warning('Could not fetch terms of service from %s, '
                                'skipping digest check: %s', uri, error)
            return
        self.logger.debug('TOS hash: %s', tos_hash)
        if tos_hash != self.tos_sha256:
            raise ConfigurationError('TOS hash mismatch. Found: %s.' % tos_hash)


def supported_challb(authzr):
    """Find supported challenge body.

    This client supports only `http-01`. If the authorization does not
    offer it this function returns `None`.

    Returns:
      `acme.messages.ChallengeBody` with `http-01` challenge or `None`.
    """
    for challb in authzr.body.challenges:
        if isinstance(challb.chall, challenges.HTTP01):
            return challb
    return None


def validation_path(root, challb):
    """Path of the validation file for `challb` under webroot `root`."""
    return os.path.join(root, challb.path.lstrip('/'))


class ChallengeResolver(object):
    """Solve http-01 challenges by writing validation files to webroots.

    Domains are handled one after the other. The validation file of a
    domain is always removed once the CA is done with it.

    Args:
      logger: Logger.
      poll_interval: Seconds between two authorization status polls.
      timeout: Seconds to wait for the CA to verify a single domain.
      cancel: `threading.Event` aborting the wait when set.
      clock: Monotonic clock, in seconds.
    """

    def __init__(self, logger=None, poll_interval=1,
                 timeout=DEFAULT_CHALLENGE_TIMEOUT, cancel=None,
                 clock=time.monotonic):
        # pylint: disable=too-many-arguments
        self.logger = logger if logger is not None else logging.getLogger(
            __name__)
        self.poll_interval = poll_interval
        self.timeout = timeout
        self.cancel = cancel if cancel is not None else threading.Event()
        self.clock = clock

    def resolve(self, client, order, roots):
        """Validate all domains of `roots` for `order`.

        Args:
          client: Registered `acme.client.ClientV2`.
          order: `acme.messages.OrderResource` for the domains of `roots`.
          roots: Dictionary mapping domain names to webroot paths.
        """
        authorizations = dict(
            (authzr.body.identifier.value, authzr)
            for authzr in order.authorizations)
        missing = [domain for domain in roots if domain not in authorizations]
        if missing:
            raise ProtocolError('CA did not return an authorization for: %s' %
                                ', '.join(missing))

        # valid authorizations only list the challenge that passed
        pending = [domain for domain in roots
                   if authorizations[domain].body.status !=
                   messages.STATUS_VALID]
        self.logger.debug('Checking all challenges are http-01')
        challbs = dict((domain, supported_challb(authorizations[domain]))
                       for domain in pending)
        if any(challb is None for challb in challbs.values()):
            raise UnsupportedChallengeError(
                'CA did not offer http-01 challenge. This client is unable '
                'to solve any other challenges.')

        for domain, root in roots.items():
            if domain not in challbs:
                self.logger.info('%s is already authorized', domain)
                continue
            self.solve(client, domain, root, authorizations[domain],
                       challbs[domain])

    def solve(self, client, domain, root, authzr, challb):
        """Answer the challenge of a single domain and wait for the CA.

        Returns:
          Final authorization status.
        """
        # pylint: disable=too-many-arguments
        response, validation = challb.response_and_validation(client.net.key)
        path = validation_path(root, challb)
        self.make_validation_dir(os.path.dirname(path))
        try:
            self.save_validation(path, validation)
            client.answer_challenge(challb, response)
            return self.wait_for_verification(client, domain, authzr)
        finally:
            self.remove_validation(path)

    @staticmethod
    def make_validation_dir(path):
        """Create the validation directory under webroot."""
        try:
            os.makedirs(path)
        except OSError as error:
            if error.errno != errno.EEXIST:
                # directory doesn't already exist and we cannot create it
                raise FileIOError('Cannot create %s: %s' % (
                    path, error.strerror))

    def save_validation(self, path, validation):
        """Save validation to webroot."""
        self.logger.debug('Saving validation (%r) at %s', validation, path)
        try:
            with open(path, 'w') as validation_file:
                validation_file.write(validation)
        except OSError as error:
            raise FileIOError('Cannot write %s: %s' % (path, error.strerror))

    def remove_validation(self, path):
        """Remove validation from webroot."""
        self.logger.debug('Removing validation file at %s', path)
        try:
            os.remove(path)
        except OSError as error:
            if error.errno != errno.ENOENT:
                raise FileIOError('Cannot remove %s: %s' % (
                    path, error.strerror))

    def wait_for_verification(self, client, domain, authzr):
        """Poll authorization until the CA is done verifying it.

        A failed verification is only logged: the CA will refuse to
        issue the certificate anyway.
        """
        deadline = self.clock() + self.timeout
        status = authzr.body.status
        while status == messages.STATUS_PENDING:
            if self.clock() >= deadline:
                raise ChallengeWaitError(
                    'Timed out after %ss while waiting for the CA to verify '
                    '%s' % (self.timeout, domain))
            if self.cancel.wait(self.poll_interval):
                raise ChallengeWaitError(
                    'Cancelled while waiting for the CA to verify %s' % domain)
            authzr, _ = client.poll(authzr)
            status = authzr.body.status

        if status == messages.STATUS_VALID:
            self.logger.info('%s was successfully verified', domain)
        else:
            self.logger.warning('%s was not successfully verified (%s). '
                                'CA is likely to refuse issuance!',
                                domain, status)
        return status


Options = collections.namedtuple('Options', [
    'roots', 'ioplugins', 'server', 'email', 'account_key_type',
    'account_key_size', 'account_key_public_exponent', 'cert_rsa',
    'cert_ecdsa', 'reuse_key', 'valid_min', 'user_agent', 'tos_sha256',
    'agree_tos', 'challenge_timeout',
], defaults=(
    None, (), LE_PRODUCTION_URI, None, 'rsa', None, DEFAULT_PUBLIC_EXPONENT,
    None, None, False, ValidityWindow.parse(DEFAULT_VALID_MIN),
    DEFAULT_USER_AGENT, None, True, DEFAULT_CHALLENGE_TIMEOUT,
))


ISSUANCE_HINT = (
    "CA refused to issue the certificate, which likely means it could "
    "not access http://example.com/.well-known/acme-challenge/X. Did you "
    "set correct path in -d example.com:path or --default-root? Are all "
    "your domains accessible from the internet? Please check your "
    "domains' DNS entries, your host's network/firewall setup and your "
    "webserver config.")


def check_roots(roots):
    """Check that there are domains, and every domain has a webroot."""
    if not roots:
        raise ConfigurationError('At least one domain must be given.')
    empty_roots = [name for name, root in roots.items() if root is None]
    if empty_roots:
        raise MissingWebrootError(
            'Root for the following host(s) were not specified: {0}. '
            'Try --default-root or use -d example.com:/var/www/html '
            'syntax'.format(', '.join(empty_roots)))


def check_key_options(options):
    """Check requested key types and sizes."""
    if options.cert_rsa is not None and options.cert_ecdsa is not None:
        raise ConflictingKeyTypesError(
            '--cert-rsa and --cert-ecdsa are mutually exclusive')
    if options.cert_ecdsa is not None:
        lookup_curve(options.cert_ecdsa)
    elif options.cert_rsa is not None:
        check_rsa_bits(options.cert_rsa)
    check_account_key_params(options.account_key_type,
                             options.account_key_size)


class CertificateLifecycle(object):
    """Issue, renew and revoke a certificate.

    Args:
      registry: `IOPluginRegistry` used to persist new data.
      cert: Existing certificate, if any.
      chain: Existing certificate chain.
      session: `AcmeSession`.
      resolver: `ChallengeResolver`.
      logger: Logger.
    """

    def __init__(self, registry, cert=None, chain=None, session=None,
                 resolver=None, logger=None):
        # pylint: disable=too-many-arguments
        self.registry = registry
        self.cert = cert
        self.chain = chain if chain is not None else []
        self.logger = logger if logger is not None else logging.getLogger(
            __name__)
        self.session = session if session is not None else AcmeSession(
            logger=self.logger)
        self.resolver = resolver if resolver is not None else (
            ChallengeResolver(logger=self.logger))

    def ensure_client(self, account_key, options):
        """Registered ACME client for `options`."""
        return self.session.ensure_client(
            account_key, options.server,
            key_type=options.account_key_type,
            key_size=options.account_key_size,
            email=options.email,
            public_exponent=options.account_key_public_exponent,
        )

    def get(self, account_key, cert_key, options):
        """Get a new certificate, or renew the existing one.

        Nothing is persisted unless the CA issued the certificate.

        Args:
          account_key: Existing account key (`josepy.JWK`) or `None`.
          cert_key: Existing certificate private key or `None`.
          options: `Options`.
        """
        self.logger.info('Creating key/cert/chain')
        roots = options.roots or {}
        check_roots(roots)
        self.logger.debug('Webroots are: %r', roots)
        check_key_options(options)

        client = self.ensure_client(account_key, options)
        key = self.signing_key(cert_key, options)

        domains = list(roots)
        order = client.new_order(gen_csr(key, domains))
        self.resolver.resolve(client, order, roots)
        order = self.finalize(client, order, options.challenge_timeout)

        pems = list(split_pems(order.fullchain_pem.encode()))
        if not pems:
            raise IssuanceError('CA did not return any certificate')
        cert = x509.load_pem_x509_certificate(pems[0])
        chain = [x509.load_pem_x509_certificate(pem) for pem in pems[1:]]

        not_covered = set(domains) - set(cert_sans(cert))
        if not_covered:
            raise ProtocolError('Issued certificate does not cover: %s' %
                                ', '.join(sorted(not_covered)))

        self.cert, self.chain = cert, chain
        self.registry.save(options.ioplugins, CertificateMaterial(
            account_key=client.net.key, key=key, cert=cert, chain=chain))

    def signing_key(self, cert_key, options):
        """Reuse `cert_key` if asked to, otherwise generate a new key."""
        if options.reuse_key and cert_key is not None:
            self.logger.info('Reusing existing certificate private key')
            return cert_key
        self.logger.info('Generating new certificate private key')
        return gen_pkey(bits=options.cert_rsa, curve=options.cert_ecdsa)

    def finalize(self, client, order, timeout):
        """Submit the CSR of `order` and wait for the certificate."""
        deadline = datetime.datetime.now() + datetime.timedelta(
            seconds=timeout)
        try:
            return client.finalize_order(order, deadline)
        except acme_errors.IssuanceError as error:
            self.logger.error(ISSUANCE_HINT)
            raise IssuanceError('Certificate issuance has failed: %s' %
                                error.error)
        except messages.Error:
            # failed challenges leave the order invalid: orderNotReady
            self.logger.error(ISSUANCE_HINT)
            raise
        except acme_errors.TimeoutError:
            raise IssuanceError('Timed out while waiting for the CA to '
                                'issue the certificate')

    def revoke(self, account_key, options):
        """Revoke the certificate.

        Returns:
          `True` if the certificate got revoked, `False` if the CA did
          not revoke it.
        """
        if self.cert is None:
            raise StateError('No existing certificate to revoke')

        client = self.ensure_client(account_key, options)
        try:
            client.revoke(self.cert, rsn=0)
        except messages.Error as error:
            if error.code != 'alreadyRevoked':
                raise
            self.logger.warning('Certificate is not revoked: %s', error)
            return False
        self.logger.info('Certificate is revoked')
        return True

    def valid_and_covers(self, domains, valid_min, now=None):
        """Is the existing certificate valid for enough time?

        Args:
          domains: Domains the certificate must cover.
          valid_min: Minimum validity in seconds.
          now: Reference time, defaults to the current time.

        Raises:
          DomainMismatchError: some of `domains` are not subjects of
            the existing certificate.
        """
        if self.cert is None:
            self.logger.debug('No existing certificate')
            return False

        existing_sans = cert_sans(self.cert)
        self.logger.debug('Existing SANs: %r, new: %r',
                          existing_sans, list(domains))
        missing = [domain for domain in domains if domain not in existing_sans]
        if missing:
            raise DomainMismatchError(
                'At least one domain is not declared as a certificate '
                'subject (%s). Backup and remove existing cert if you want '
                'to proceed.' % ', '.join(missing))

        return not self.renewal_necessary(valid_min, now)

    def renewal_necessary(self, valid_min, now=None):
        """Does the certificate expire in less than `valid_min` seconds?"""
        if now is None:
            now = datetime.datetime.now(pytz.utc)
        expiry = self.cert.not_valid_after_utc
        diff = expiry - now
        self.logger.debug('Certificate expires in %s on %s (relative to %s)',
                          diff, expiry, now)
        return diff < datetime.timedelta(seconds=valid_min)


class Vhost(collections.namedtuple('Vhost', 'name root')):
    """Vhost: domain name and public html root."""
    _SEP = ':'

    @classmethod
    def decode(cls, data):
        r"""Decode vhost and perform basic sanitization on the domain name:
        - raise an error if domain is not ASCII (Internationalized Domain
        Names are supported by Let's Encrypt using punycode).
        - converts domain to lowercase.

        >>> Vhost.decode('example.com')
        Vhost(name='example.com', root=None)
        >>> Vhost.decode('EXAMPLE.COM')
        Vhost(name='example.com', root=None)

        utf-8 test with example.china:
        >>> Vhost.decode('例如.中国')
        Traceback (most recent call last):
        ...
        ConfigurationError: Non-ASCII domain names aren't supported.
        >>> Vhost.decode('example.com:/var/www/html')
        Vhost(name='example.com', root='/var/www/html')
        """
        if isinstance(data, cls):
            return data
        parts = data.split(cls._SEP, 1)

        try:
            parts[0].encode('ascii')
        except UnicodeError:
            raise ConfigurationError(
                "Non-ASCII domain names aren't supported. To issue for an "
                "Internationalized Domain Name, use Punycode.")

        parts[0] = parts[0].lower()

        parts.append(None)
        return cls(name=parts[0], root=parts[1])


def compute_roots(vhosts, default_root):
    """Compute webroots.

    Args:
      vhosts: collection of `Vhost` objects.
      default_root: Default webroot path.

    Returns:
      Dictionary mapping vhost name to its webroot path. Vhosts without
      a root will be pre-populated with the `default_root`, which may
      be `None`.
    """
    roots = {}
    for vhost in vhosts or ():
        if vhost.root is not None:
            root = vhost.root

            # Users mistakenly try to supply a port number, like
            # example.com:8000. Theoretically, this could be a valid
            # path, but it's *probably* a mistake; warn the user:
            match = re.match(r'^([0-9]{1,5})(:|$)', root)
            if match:
                portno, _ = match.groups()
                if 0 <= int(portno) < 2 ** 16:
                    logger.warning("Your webroot path (%s) looks like it is "
                                   "a port number or starts with one; this "
                                   "should be a directory name/path. "
                                   "Continuing anyway, but this may not be "
                                   "what you intended...", root)
        else:
            root = default_root
        roots[vhost.name] = root
    return roots


def create_parser(registry):
    """Create argument parser."""
    parser = argparse.ArgumentParser(
        description=__doc__.splitlines()[0],
        usage=argparse.SUPPRESS, add_help=False,
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )

    general = parser.add_argument_group()
    general.add_argument(
        '-v', '--verbose', action='count', default=0,
        help='Increase verbosity of the logging, can be repeated.',
    )

    modes = parser.add_argument_group()
    modes.add_argument(
        '-h', '--help', action='store_true',
        help='Show this help message and exit.',
    )
    modes.add_argument(
        '--version', action='store_true',
        help='Display version and exit.'
    )
    modes.add_argument(
        '--revoke', action='store_true', default=False,
        help='Revoke existing certificate')
    modes.add_argument(
        '--test', action='store_true', default=False,
        help='Run tests and exit.',
    )

    manager = parser.add_argument_group(
        'Webroot manager', description='This client writes http-01 '
        'validation files under the webroot of each domain.'
    )
    manager.add_argument(
        '-d', '--domain', dest='vhosts', action='append',
        type=Vhost.decode, metavar='DOMAIN[:PATH]',
        help='Domain name that will be included in the certificate. '
        'Must be specified at least once.',
    )
    manager.add_argument(
        '--default-root', metavar='PATH',
        help='Webroot path for domains without PATH part.',
    )

    io_group = parser.add_argument_group('Certificate data files')
    io_group.add_argument(
        '-f', '--file', dest='ioplugins', action='append', default=[],
        metavar='FILE', choices=registry.names(),
        help='Input/output file, can be specified multiple times and, in '
        'fact, it should be specified as many times as it is necessary to '
        'cover all components: account key, key, certificate, chain. '
        'Allowed values: %s.' % ', '.join(registry.names()),
    )
    io_group.add_argument(
        '--cert-rsa', type=int, metavar='BITS',
        help='Certificate RSA key size (%d if neither --cert-rsa nor '
        '--cert-ecdsa is given). Fresh key is created for each '
        'renewal.' % DEFAULT_CERT_RSA_BITS,
    )
    io_group.add_argument(
        '--cert-ecdsa', metavar='CURVE',
        help='Certificate ECDSA key curve. Allowed values: %s.' %
        ', '.join(acceptable_curves()),
    )
    io_group.add_argument(
        '--valid-min', type=ValidityWindow.parse, default=DEFAULT_VALID_MIN,
        metavar='TIME', help='Renew the existing certificate if it '
        'expires in less than TIME: seconds, or minutes (30m), hours '
        '(12h), days (30d).',
    )
    io_group.add_argument(
        '--reuse-key', action='store_true', default=False,
        help='Reuse private key if it was previously persisted.',
    )

    reg = parser.add_argument_group(
        'Registration', description='This client will automatically '
        'register an account with the ACME CA specified by `--server`.'
    )
    reg.add_argument(
        '--account-key-type', choices=sorted(DEFAULT_ACCOUNT_KEY_SIZES),
        default='rsa', help='Account key type.',
    )
    reg.add_argument(
        '--account-key-size', type=int, metavar='BITS',
        help='Account key size in bits (RSA: 4096 by default, ECDSA: 256 '
        'or 384, 256 by default).',
    )
    reg.add_argument(
        '--account-key-public-exponent', type=int,
        default=DEFAULT_PUBLIC_EXPONENT, metavar='NUM',
        help='Account key public exponent value.',
    )
    reg.add_argument(
        '--email', help='Email address. CA is likely to use it to '
        'remind about expiring certificates, as well as for account '
        'recovery. Therefore, it\'s highly recommended to set this '
        'value.',
    )
    reg.add_argument(
        '--tos-sha256', metavar='HASH', help='SHA-256 hash of the '
        'contents of Terms Of Service URI contents. Not checked if '
        'not given.',
    )
    reg.add_argument(
        '--no-agree-tos', dest='agree_tos', action='store_false',
        help='Do not agree to the CA terms of service when registering.',
    )

    http = parser.add_argument_group(
        'HTTP', description='Configure properties of HTTP requests and '
        'responses.',
    )
    http.add_argument(
        '--user-agent', default=DEFAULT_USER_AGENT, metavar='NAME',
        help='User-Agent sent in all HTTP requests. Override with '
        '--user-agent "" if you want to protect your privacy.',
    )
    http.add_argument(
        '--server', metavar='URI', default=LE_PRODUCTION_URI,
        help='Directory URI for the CA ACME API endpoint.',
    )
    http.add_argument(
        '--challenge-timeout', type=int, default=DEFAULT_CHALLENGE_TIMEOUT,
        metavar='SECONDS', help='Maximum time to wait for the CA to '
        'verify a domain, and to issue the certificate.',
    )
    return parser


def options_from_args(args):
    """Build `Options` from parsed command line arguments."""
    return Options(
        roots=compute_roots(args.vhosts, args.default_root),
        ioplugins=args.ioplugins,
        server=args.server,
        email=args.email,
        account_key_type=args.account_key_type,
        account_key_size=args.account_key_size,
        account_key_public_exponent=args.account_key_public_exponent,
        cert_rsa=args.cert_rsa,
        cert_ecdsa=args.cert_ecdsa,
        reuse_key=args.reuse_key,
        valid_min=args.valid_min,
        user_agent=args.user_agent,
        tos_sha256=args.tos_sha256,
        agree_tos=args.agree_tos,
        challenge_timeout=args.challenge_timeout,
    )


def new_lifecycle(registry, existing, options):
    """Create `CertificateLifecycle` for existing data and options."""
    session = AcmeSession(
        logger=logger, user_agent=options.user_agent,
        tos_sha256=options.tos_sha256, agree_tos=options.agree_tos)
    resolver = ChallengeResolver(
        logger=logger, timeout=options.challenge_timeout)
    return CertificateLifecycle(
        registry, cert=existing.cert, chain=existing.chain,
        session=session, resolver=resolver, logger=logger)


class TestLoader(unittest.TestLoader):
    """letscert test loader."""

    def load_tests_from_subclass(self, subcls):
        """Load tests which subclass from specific test case class."""
        module = sys.modules[__name__]
        return self.suiteClass([
            self.loadTestsFromTestCase(getattr(module, attr))
            for attr in dir(module)
            if isinstance(getattr(module, attr), type) and
            issubclass(getattr(module, attr), subcls)])


def test(args):
    """Run tests (--test)."""
    suite = unittest.TestSuite((
        TestLoader().load_tests_from_subclass(UnitTestCase),
        doctest.DocTestSuite(sys.modules[__name__], optionflags=(
            doctest.ELLIPSIS | doctest.IGNORE_EXCEPTION_DETAIL)),
    ))
    return EXIT_TESTS_OK if unittest.TextTestRunner(
        verbosity=(2 if args.verbose else 1)).run(
            suite).wasSuccessful() else EXIT_ERROR


def revoke(args, registry):
    """Revoke certificate."""
    existing = registry.load(args.ioplugins)
    options = options_from_args(args)
    lifecycle = new_lifecycle(registry, existing, options)
    if lifecycle.revoke(existing.account_key, options):
        return EXIT_REVOKE_OK
    return EXIT_NOT_REVOKED


def setup_logging(verbose):
    """Setup basic logging."""
    level = (logging.WARNING, logging.INFO, logging.DEBUG)[min(verbose, 2)]
    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    handler = logging.StreamHandler()
    handler.setLevel(level)
    formatter = logging.Formatter(
        fmt='%(asctime)s:%(levelname)s:%(name)s:%(lineno)d: %(message)s',
    )
    formatter.converter = time.gmtime  # UTC instead of localtime
    handler.setFormatter(formatter)
    root_logger.addHandler(handler)


def main_with_exceptions(cli_args):
    # pylint: disable=too-many-return-statements
    """Run the script, throw exceptions on error."""
    registry = default_registry(logger)
    parser = create_parser(registry)
    try:
        args = parser.parse_args(cli_args)
    except SystemExit:
        return EXIT_ERROR

    if args.test:  # --test
        return test(args)
    if args.help:  # --help
        parser.print_help()
        return EXIT_HELP_VERSION_OK
    if args.version:  # --version
        sys.stdout.write('%s %s\n' % (os.path.basename(sys.argv[0]), VERSION))
        return EXIT_HELP_VERSION_OK

    setup_logging(args.verbose)
    logger.debug('%r parsed as %r', cli_args, args)

    if args.revoke:  # --revoke
        return revoke(args, registry)

    if not args.vhosts:
        raise ConfigurationError('At least one domain must be given with '
                                 '--domain.')
    registry.check_persist_all(args.ioplugins)

    options = options_from_args(args)
    existing = registry.load(args.ioplugins)
    lifecycle = new_lifecycle(registry, existing, options)
    if lifecycle.valid_and_covers(list(options.roots),
                                  options.valid_min.seconds):
        logger.info('Certificates already exist and renewal is not '
                    'necessary, exiting with status code %d.', EXIT_NO_RENEWAL)
        return EXIT_NO_RENEWAL

    lifecycle.get(existing.account_key, existing.key, options)
    return EXIT_RENEWAL


def exit_with_error(message):
    """Print `message` and debugging tips to STDERR, exit with EXIT_ERROR."""
    sys.stderr.write('Error: %s\n\nDebugging tips: -v improves output '
                     'verbosity. Help is available under --help.\n' % message)
    return EXIT_ERROR


# tuple avoids a pylint warning about (mutable) list as default argument:
def main(cli_args=tuple(sys.argv[1:])):
    """Run the script, with exceptions caught and printed to STDERR."""
    # logging (handler) might not be set up yet, use STDERR as well!
    try:
        return main_with_exceptions(cli_args)
    except Error as error:
        logger.error('%s', error)
        return exit_with_error(error)
    except (messages.Error, acme_errors.Error) as error:
        logger.error('ACME server returned an error: %s', error)
        return exit_with_error('ACME server returned an error: %s' % error)
    except BaseException:  # pylint: disable=broad-except
        # maintain manifest invariant: `exit 1` iff renewal not
        # necessary, `exit 2` iff error
        traceback.print_exc(file=sys.stderr)
        return exit_with_error(
            '\nUnhandled error has happened, traceback is above')


@contextlib.contextmanager
def chdir(path):
    """Context manager that adjusts CWD."""
    old_path = os.getcwd()
    os.chdir(path)
    try:
        yield old_path
    finally:
        os.chdir(old_path)


def gen_ss_cert(key, domains, validity=(90 * 24 * 60 * 60)):
    """Generate a self-signed certificate valid for `validity` seconds."""
    now = datetime.datetime.now(pytz.utc)
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, domains[0])])
    return x509.CertificateBuilder().subject_name(name).issuer_name(
        name).public_key(key.public_key()).serial_number(
            x509.random_serial_number()).not_valid_before(
                now - datetime.timedelta(minutes=5)).not_valid_after(
                    now + datetime.timedelta(seconds=validity)).add_extension(
                        x509.SubjectAlternativeName(
                            [x509.DNSName(domain) for domain in domains]),
                        critical=False).sign(key, hashes.SHA256())


def gen_test_account_key():
    """Small account key for tests."""
    return jose.JWKRSA(key=rsa.generate_private_key(
        public_exponent=DEFAULT_PUBLIC_EXPONENT, key_size=1024))


def make_authzr(domain, status=messages.STATUS_PENDING, chall=None):
    """Authorization resource with a single challenge for `domain`."""
    uri = 'https://ca.test/authz/%s' % domain
    challb = messages.ChallengeBody(
        uri=(uri + '/1'), status=messages.STATUS_PENDING,
        chall=(chall or challenges.HTTP01(token=os.urandom(16))))
    return messages.AuthorizationResource(uri=uri, body=messages.Authorization(
        identifier=messages.Identifier(
            typ=messages.IDENTIFIER_FQDN, value=domain),
        challenges=(challb,), status=status))


class FakeCA(object):
    """Stand-in for the CA side of `acme.client.ClientV2`.

    Orders get one pending http-01 authorization per CSR domain, polling
    turns them into `verify_status`, finalization signs the CSR.
    """
    # this is a test suite | pylint: disable=missing-docstring

    def __init__(self, account_key=None, verify_status=messages.STATUS_VALID):
        self.verify_status = verify_status
        self.ca_key = ec.generate_private_key(ec.SECP256R1())
        self.ca_cert = gen_ss_cert(self.ca_key, ['ca.test'])
        self.issued_sans = None
        self.answered = []

        self.client = mock.Mock()
        self.client.net.key = account_key
        self.client.directory.meta.terms_of_service = None
        self.client.new_order.side_effect = self.new_order
        self.client.answer_challenge.side_effect = self.answer_challenge
        self.client.poll.side_effect = self.poll
        self.client.finalize_order.side_effect = self.finalize_order

    def client_for(self, account_key, server, user_agent):
        """Client factory for `AcmeSession`."""
        # pylint: disable=unused-argument
        self.client.net.key = account_key
        return self.client

    def new_order(self, csr_pem):
        csr = x509.load_pem_x509_csr(csr_pem)
        sans = csr.extensions.get_extension_for_class(
            x509.SubjectAlternativeName).value.get_values_for_type(x509.DNSName)
        return mock.Mock(csr_pem=csr_pem, authorizations=[
            make_authzr(domain) for domain in sans])

    def answer_challenge(self, challb, response):
        # pylint: disable=unused-argument
        self.answered.append(challb)

    def poll(self, authzr):
        return authzr.update(body=authzr.body.update(
            status=self.verify_status)), None

    def finalize_order(self, orderr, deadline):
        # pylint: disable=unused-argument
        csr = x509.load_pem_x509_csr(orderr.csr_pem)
        san = csr.extensions.get_extension_for_class(
            x509.SubjectAlternativeName).value
        if self.issued_sans is not None:
            san = x509.SubjectAlternativeName(
                [x509.DNSName(name) for name in self.issued_sans])
        now = datetime.datetime.now(pytz.utc)
        subject = x509.Name([x509.NameAttribute(
            NameOID.COMMON_NAME, san.get_values_for_type(x509.DNSName)[0])])
        cert = x509.CertificateBuilder().subject_name(
            subject).issuer_name(self.ca_cert.subject).public_key(
                csr.public_key()).serial_number(
                    x509.random_serial_number()).not_valid_before(
                        now).not_valid_after(
                            now + datetime.timedelta(days=90)).add_extension(
                                san, critical=True).sign(
                                    self.ca_key, hashes.SHA256())
        fullchain = b''.join(c.public_bytes(serialization.Encoding.PEM)
                             for c in (cert, self.ca_cert))
        return mock.Mock(fullchain_pem=fullchain.decode())


class TempDirTestMixin(object):
    """Run each test in a fresh temporary directory."""
    # this is a test suite | pylint: disable=missing-docstring

    def setUp(self):  # pylint: disable=invalid-name
        super(TempDirTestMixin, self).setUp()
        self.root = tempfile.mkdtemp()
        self._cwd = chdir(self.root)
        self._cwd.__enter__()

    def tearDown(self):  # pylint: disable=invalid-name
        self._cwd.__exit__(None, None, None)
        shutil.rmtree(self.root)
        super(TempDirTestMixin, self).tearDown()


class ValidityWindowTest(UnitTestCase):
    """Tests for ValidityWindow."""
    # this is a test suite | pylint: disable=missing-docstring

    def test_units(self):
        for string, seconds in [('0', 0), ('45', 45), ('3m', 180),
                                ('12h', 12 * 3600), ('30d', 30 * 86400)]:
            self.assertEqual(seconds, ValidityWindow.parse(string).seconds)

    def test_keeps_original_string(self):
        self.assertEqual('0012h', str(ValidityWindow.parse('0012h')))

    def test_invalid(self):
        for string in ['', 'd', '-5', '5s', '1.5d', '5 d', '5dd', '5\n']:
            self.assert_raises_regexp(
                ConfigurationError, 'Invalid duration',
                ValidityWindow.parse, string)


class KeyHelpersTest(UnitTestCase):
    """Tests for key generation helpers."""
    # this is a test suite | pylint: disable=missing-docstring

    def test_unknown_curve_lists_acceptable(self):
        with self.assert_raises(UnknownCurveError) as context:
            lookup_curve('secp224r1')
        msg = str(context.error)
        self.assertTrue('secp256r1' in msg and 'secp384r1' in msg)
        self.assertFalse('secp192r1' in msg or 'secp224r1,' in msg)

    def test_curve_aliases(self):
        self.assertTrue(isinstance(lookup_curve('prime256v1'), ec.SECP256R1))

    def test_account_key_ecdsa_sizes(self):
        self.assertEqual(jose.ES384, jws_alg(gen_account_key('ecdsa', 384)))
        self.assertEqual(jose.ES256, jws_alg(gen_account_key('ecdsa')))
        self.assert_raises_regexp(
            UnsupportedKeySizeError, 'ECDSA account keys must be 256 or 384',
            gen_account_key, 'ecdsa', 521)

    def test_account_key_type(self):
        self.assert_raises_regexp(
            ConfigurationError, 'Unsupported account key type',
            gen_account_key, 'dsa')

    def test_small_rsa(self):
        self.assert_raises_regexp(
            UnsupportedKeySizeError, 'RSA keys must be at least',
            gen_pkey, 512)

    def test_csr_sans(self):
        csr = x509.load_pem_x509_csr(gen_csr(
            gen_pkey(curve='secp256r1'), ['example.com', 'example.net']))
        self.assertEqual(['example.com', 'example.net'], sorted(
            csr.extensions.get_extension_for_class(
                x509.SubjectAlternativeName).value.get_values_for_type(
                    x509.DNSName)))


class PluginIOTestMixin(object):
    """Common plugins tests."""
    # this is a test suite | pylint: disable=missing-docstring

    def __init__(self, *args, **kwargs):
        super(PluginIOTestMixin, self).__init__(*args, **kwargs)

        raw_key = gen_pkey(curve='secp256r1')
        self.all_data = CertificateMaterial(
            account_key=gen_test_account_key(),
            key=raw_key,
            cert=gen_ss_cert(raw_key, ['a']),
            chain=[
                gen_ss_cert(raw_key, ['b']),
                gen_ss_cert(raw_key, ['c']),
            ],
        )

    def make_plugin(self, path):
        raise NotImplementedError()

    def setUp(self):  # pylint: disable=invalid-name
        self.root = tempfile.mkdtemp()
        self.path = os.path.join(self.root, 'plugin')
        self.plugin = self.make_plugin(self.path)

    def tearDown(self):  # pylint: disable=invalid-name
        shutil.rmtree(self.root)

    def assert_material_equal(self, first, second):
        self.assertEqual([comparable(component) for component in first],
                         [comparable(component) for component in second])


class FileIOPluginTestMixin(PluginIOTestMixin):
    """Common FileIO plugins tests."""
    # this is a test suite | pylint: disable=missing-docstring

    def test_empty(self):
        self.assertEqual(EMPTY_MATERIAL, self.plugin.load())

    def test_save_ignore_unpersisted(self):
        self.plugin.save(self.all_data)
        self.assert_material_equal(self.plugin.load(), CertificateMaterial(
            *(data if persist else None for persist, data in
              zip(self.plugin.persisted(), self.all_data))))

    def test_unchanged_not_rewritten(self):
        self.plugin.save(self.all_data)
        self.assertFalse(self.check_logs(
            logging.INFO, 'Saving', lambda: self.plugin.save(self.all_data)))


class AccountKeyFileTest(FileIOPluginTestMixin, UnitTestCase):
    """Tests for AccountKeyFile."""
    # this is a test suite | pylint: disable=missing-docstring

    def make_plugin(self, path):
        return AccountKeyFile(path, JWKCodec())

    def test_empty_file(self):
        with open(self.path, 'w'):
            pass
        self.assertEqual(EMPTY_MATERIAL, self.plugin.load())

    def test_jwk_fields(self):
        self.plugin.save(self.all_data)
        with open(self.path) as key_file:
            content = key_file.read()
        for field in ('kty', 'n', 'e', 'd', 'p', 'q', 'dp', 'dq', 'qi'):
            self.assertTrue('"%s"' % field in content, field)
        self.assertFalse('=' in content)

    def test_ecdsa_key(self):
        key = gen_account_key('ecdsa', 384)
        self.plugin.save(self.all_data._replace(account_key=key))
        self.assertEqual(key, self.plugin.load().account_key)

    def test_corrupt(self):
        with open(self.path, 'w') as key_file:
            key_file.write('{"kty": "foo"')
        self.assert_raises_error(
            '.*the file might be empty or corrupt', self.plugin.load)


class KeyFileTest(FileIOPluginTestMixin, UnitTestCase):
    """Tests for KeyFile (PEM)."""
    # this is a test suite | pylint: disable=missing-docstring

    def make_plugin(self, path):
        return KeyFile(path, X509Codec(serialization.Encoding.PEM))

    def test_rsa_key(self):
        key = gen_pkey(1024)
        self.plugin.save(self.all_data._replace(key=key))
        self.assertEqual(comparable(key), comparable(self.plugin.load().key))


class DERKeyFileTest(FileIOPluginTestMixin, UnitTestCase):
    """Tests for KeyFile (DER)."""
    # this is a test suite | pylint: disable=missing-docstring

    def make_plugin(self, path):
        return KeyFile(path, X509Codec(serialization.Encoding.DER))


class CertFileTest(FileIOPluginTestMixin, UnitTestCase):
    """Tests for CertFile (PEM)."""
    # this is a test suite | pylint: disable=missing-docstring

    def make_plugin(self, path):
        return CertFile(path, X509Codec(serialization.Encoding.PEM))

    def test_corrupt(self):
        with open(self.path, 'wb') as cert_file:
            cert_file.write(b'garbage')
        self.assert_raises_error(
            '.*the file might be empty or corrupt', self.plugin.load)


class DERCertFileTest(FileIOPluginTestMixin, UnitTestCase):
    """Tests for CertFile (DER)."""
    # this is a test suite | pylint: disable=missing-docstring

    def make_plugin(self, path):
        return CertFile(path, X509Codec(serialization.Encoding.DER))


class ChainFileTest(FileIOPluginTestMixin, UnitTestCase):
    """Tests for ChainFile."""
    # this is a test suite | pylint: disable=missing-docstring

    def make_plugin(self, path):
        return ChainFile(path, X509Codec(serialization.Encoding.PEM))


class FullChainFileTest(FileIOPluginTestMixin, UnitTestCase):
    """Tests for FullChainFile."""
    # this is a test suite | pylint: disable=missing-docstring

    def make_plugin(self, path):
        return FullChainFile(path, X509Codec(serialization.Encoding.PEM))

    def test_leaf_first(self):
        self.plugin.save(self.all_data)
        with open(self.path, 'rb') as chain_file:
            pems = list(split_pems(chain_file.read()))
        self.assertEqual(3, len(pems))
        self.assertEqual(self.all_data.cert,
                         x509.load_pem_x509_certificate(pems[0]))


class IOPluginRegistryTest(TempDirTestMixin, UnitTestCase):
    """Tests for IOPluginRegistry."""
    # this is a test suite | pylint: disable=missing-docstring

    def setUp(self):  # pylint: disable=invalid-name
        super(IOPluginRegistryTest, self).setUp()
        self.registry = default_registry()

    def test_names(self):
        self.assertEqual([
            'account_key.json', 'cert.der', 'cert.pem', 'chain.pem',
            'fullchain.pem', 'key.der', 'key.pem'], self.registry.names())

    def test_register_rejects_paths(self):
        for path in ('foo/bar.pem', '.', '..'):
            self.assert_raises_error(
                'Plugin name should just be a file name',
                self.registry.register, CertFile(path, X509Codec()))

    def test_unknown(self):
        self.assert_raises_error(
            'Unknown IO plugin', self.registry.load, ['foo.pem'])

    def test_check_persist_all(self):
        self.assert_raises_error(
            '.*cover the following components: cert, chain',
            self.registry.check_persist_all, ['account_key.json', 'key.pem'])
        self.assert_raises_error(
            '.*cover the following components: account_key',
            self.registry.check_persist_all, ['key.der', 'fullchain.pem'])
        self.registry.check_persist_all(
            ['account_key.json', 'key.pem', 'cert.pem', 'chain.pem'])

    def test_load_merges(self):
        key = gen_pkey(curve='secp256r1')
        cert = gen_ss_cert(key, ['example.com'])
        data = CertificateMaterial(account_key=gen_test_account_key(),
                                   key=key, cert=cert, chain=[])
        names = ['account_key.json', 'key.pem', 'key.der', 'cert.pem',
                 'fullchain.pem']
        self.registry.save(names, data)
        loaded = self.registry.load(names)
        self.assertEqual(data.account_key, loaded.account_key)
        self.assertEqual(comparable(key), comparable(loaded.key))
        self.assertEqual(cert, loaded.cert)
        self.assertEqual([], loaded.chain)

    def test_load_conflict(self):
        self.registry['key.pem'].save(EMPTY_MATERIAL._replace(
            key=gen_pkey(curve='secp256r1')))
        self.registry['key.der'].save(EMPTY_MATERIAL._replace(
            key=gen_pkey(curve='secp256r1')))
        self.assert_raises_error(
            'Some plugins returned conflicting data for the "key" component',
            self.registry.load, ['key.pem', 'key.der'])

    def test_save_all_or_nothing(self):
        os.mkdir('cert.pem')
        key = gen_pkey(curve='secp256r1')
        data = CertificateMaterial(
            account_key=gen_test_account_key(), key=key,
            cert=gen_ss_cert(key, ['example.com']), chain=[])
        self.assert_raises_error(
            'Error when saving cert.pem', self.registry.save,
            ['account_key.json', 'key.pem', 'cert.pem', 'chain.pem'], data)
        self.assertEqual(['cert.pem'], os.listdir(self.root))


class AcmeSessionTest(UnitTestCase):
    """Tests for AcmeSession."""
    # this is a test suite | pylint: disable=missing-docstring

    def setUp(self):  # pylint: disable=invalid-name
        self.account_key = gen_test_account_key()
        self.client = mock.Mock()
        self.client.directory.meta.terms_of_service = None
        self.factory = mock.Mock(return_value=self.client)
        self.session = AcmeSession(client_factory=self.factory)

    def test_client_is_cached(self):
        first = self.session.ensure_client(
            self.account_key, 'https://ca.test/dir', email='a@example.com')
        second = self.session.ensure_client(
            None, 'https://other.test/dir', key_type='ecdsa', key_size=384)
        self.assertTrue(first is second)
        self.assertTrue(first is self.client)
        self.factory.assert_called_once_with(
            self.account_key, 'https://ca.test/dir', DEFAULT_USER_AGENT)
        self.assertEqual(1, self.client.new_account.call_count)

    def test_registration_contact(self):
        self.session.ensure_client(
            self.account_key, 'https://ca.test/dir', email='a@example.com')
        new_reg = self.client.new_account.call_args[0][0]
        self.assertEqual(('mailto:a@example.com',), new_reg.contact)

    def test_generates_account_key(self):
        self.session.ensure_client(
            None, 'https://ca.test/dir', key_type='ecdsa', key_size=384)
        key = self.factory.call_args[0][0]
        self.assertTrue(isinstance(key, jose.JWKEC))

    def test_bad_account_key_size_before_registration(self):
        self.assert_raises_regexp(
            UnsupportedKeySizeError, '.*256 or 384',
            self.session.ensure_client, None, 'https://ca.test/dir',
            key_type='ecdsa', key_size=300)
        self.assertEqual(0, self.factory.call_count)
        self.assertTrue(self.session.client is None)

    def test_missing_email_warns(self):
        self.assertTrue(self.check_logs(
            logging.WARNING, '--email was not provided',
            lambda: self.session.ensure_client(
                self.account_key, 'https://ca.test/dir')))
        new_reg = self.client.new_account.call_args[0][0]
        self.assertFalse(new_reg.contact)

    def test_already_registered(self):
        self.client.new_account.side_effect = acme_errors.ConflictError(
            'https://ca.test/acct/1')
        client = self.session.ensure_client(
            self.account_key, 'https://ca.test/dir', email='a@example.com')
        self.assertTrue(client is self.client)
        regr = self.client.query_registration.call_args[0][0]
        self.assertEqual('https://ca.test/acct/1', regr.uri)

    def test_registration_error(self):
        self.client.new_account.side_effect = messages.Error.with_code(
            'invalidContact', detail='not a valid e-mail address')
        self.assert_raises_regexp(
            messages.Error, '.*not a valid e-mail address',
            self.session.ensure_client, self.account_key,
            'https://ca.test/dir', email='foo')
        self.assertTrue(self.session.client is None)

    def test_agrees_tos(self):
        self.client.directory.meta.terms_of_service = 'https://ca.test/tos'
        self.session.ensure_client(self.account_key, 'https://ca.test/dir')
        new_reg = self.client.new_account.call_args[0][0]
        self.assertTrue(new_reg.terms_of_service_agreed)

    def test_no_agree_tos(self):
        self.client.directory.meta.terms_of_service = 'https://ca.test/tos'
        self.session.agree_tos = False
        self.session.ensure_client(self.account_key, 'https://ca.test/dir')
        new_reg = self.client.new_account.call_args[0][0]
        self.assertFalse(new_reg.terms_of_service_agreed)

    def test_tos_unreachable(self):
        self.client.directory.meta.terms_of_service = 'https://ca.test/tos'
        self.session.tos_sha256 = 'abc'
        with mock.patch('requests.get') as mock_get:
            mock_get.side_effect = requests.ConnectionError('reset by peer')
            self.session.ensure_client(self.account_key, 'https://ca.test/dir')
        new_reg = self.client.new_account.call_args[0][0]
        self.assertTrue(new_reg.terms_of_service_agreed)

    def test_tos_mismatch(self):
        self.client.directory.meta.terms_of_service = 'https://ca.test/tos'
        self.session.tos_sha256 = 'abc'
        with mock.patch('requests.get'):
            self.assert_raises_regexp(
                ConfigurationError, 'TOS hash mismatch',
                self.session.ensure_client, self.account_key,
                'https://ca.test/dir')
        self.assertEqual(0, self.client.new_account.call_count)


class ChallengeResolverTest(UnitTestCase):
    """Tests for ChallengeResolver."""
    # this is a test suite | pylint: disable=missing-docstring

    def setUp(self):  # pylint: disable=invalid-name
        self.root = tempfile.mkdtemp()
        self.roots = {
            'example.org': os.path.join(self.root, 'a'),
            'www.example.org': os.path.join(self.root, 'b'),
        }
        self.ca = FakeCA(account_key=gen_test_account_key())
        self.order = mock.Mock(authorizations=[
            make_authzr(domain) for domain in self.roots])
        self.resolver = ChallengeResolver(poll_interval=0)

    def tearDown(self):  # pylint: disable=invalid-name
        shutil.rmtree(self.root)

    def token_paths(self):
        return [validation_path(self.roots[authzr.body.identifier.value],
                                supported_challb(authzr))
                for authzr in self.order.authorizations]

    def test_writes_then_removes_tokens(self):
        seen = []

        def answer(challb, response):
            # pylint: disable=unused-argument
            path = validation_path(
                self.roots[self.order.authorizations[len(seen)]
                           .body.identifier.value], challb)
            with open(path) as validation_file:
                seen.append(validation_file.read())

        self.ca.client.answer_challenge.side_effect = answer
        self.resolver.resolve(self.ca.client, self.order, self.roots)
        self.assertEqual(2, len(seen))
        for content, authzr in zip(seen, self.order.authorizations):
            self.assertTrue(content.startswith(
                supported_challb(authzr).chall.encode('token') + '.'))
        for path in self.token_paths():
            self.assertFalse(os.path.exists(path))
            self.assertTrue(path.startswith(self.root))
            self.assertTrue('/.well-known/acme-challenge/' in path)

    def test_unsupported_challenge_before_any_write(self):
        self.order.authorizations[1] = make_authzr(
            'www.example.org', chall=challenges.DNS01(token=os.urandom(16)))
        self.assert_raises_regexp(
            UnsupportedChallengeError, 'CA did not offer http-01',
            self.resolver.resolve, self.ca.client, self.order, self.roots)
        self.assertEqual([], os.listdir(self.root))
        self.assertEqual(0, self.ca.client.answer_challenge.call_count)

    def test_missing_authorization(self):
        del self.order.authorizations[1]
        self.assert_raises_regexp(
            ProtocolError, '.*authorization for: www.example.org',
            self.resolver.resolve, self.ca.client, self.order, self.roots)

    def test_invalid_is_only_a_warning(self):
        self.ca.verify_status = messages.STATUS_INVALID
        self.assertTrue(self.check_logs(
            logging.WARNING, 'example.org was not successfully verified',
            lambda: self.resolver.resolve(
                self.ca.client, self.order, self.roots)))
        self.assertEqual(2, len(self.ca.answered))
        for path in self.token_paths():
            self.assertFalse(os.path.exists(path))

    def test_already_valid_skipped(self):
        self.order.authorizations[0] = make_authzr(
            'example.org', status=messages.STATUS_VALID)
        self.resolver.resolve(self.ca.client, self.order, self.roots)
        self.assertEqual(1, len(self.ca.answered))
        self.assertFalse(os.path.exists(self.roots['example.org']))

    def test_polls_until_not_pending(self):
        statuses = [messages.STATUS_PENDING, messages.STATUS_PENDING,
                    messages.STATUS_VALID]

        def poll(authzr):
            return authzr.update(body=authzr.body.update(
                status=statuses.pop(0))), None

        self.ca.client.poll.side_effect = poll
        del self.order.authorizations[1]
        del self.roots['www.example.org']
        self.resolver.resolve(self.ca.client, self.order, self.roots)
        self.assertEqual(3, self.ca.client.poll.call_count)

    def test_timeout_removes_token(self):
        self.ca.verify_status = messages.STATUS_PENDING
        self.resolver.timeout = 0
        self.assert_raises_regexp(
            ChallengeWaitError, 'Timed out',
            self.resolver.resolve, self.ca.client, self.order, self.roots)
        self.assertFalse(os.path.exists(self.token_paths()[0]))

    def test_cancel(self):
        self.ca.verify_status = messages.STATUS_PENDING
        self.resolver.cancel.set()
        self.assert_raises_regexp(
            ChallengeWaitError, 'Cancelled',
            self.resolver.resolve, self.ca.client, self.order, self.roots)
        self.assertEqual(0, self.ca.client.poll.call_count)
        self.assertFalse(os.path.exists(self.token_paths()[0]))

    def test_answer_error_removes_token(self):
        self.ca.client.answer_challenge.side_effect = messages.Error.with_code(
            'malformed', detail='boom')
        self.assert_raises_regexp(
            messages.Error, '.*boom',
            self.resolver.resolve, self.ca.client, self.order, self.roots)
        self.assertTrue(os.path.isdir(os.path.dirname(self.token_paths()[0])))
        self.assertFalse(os.path.exists(self.token_paths()[0]))

    def test_valid_authorization_needs_no_http01(self):
        self.order.authorizations[1] = make_authzr(
            'www.example.org', status=messages.STATUS_VALID,
            chall=challenges.DNS01(token=os.urandom(16)))
        self.resolver.resolve(self.ca.client, self.order, self.roots)
        self.assertEqual(1, len(self.ca.answered))
        self.assertFalse(os.path.exists(self.roots['www.example.org']))

    def test_remove_validation(self):
        path = os.path.join(self.root, 'token')
        self.resolver.remove_validation(path)
        os.mkdir(path)
        self.assert_raises_regexp(
            FileIOError, 'Cannot remove',
            self.resolver.remove_validation, path)

    def test_root_not_a_directory(self):
        with open(self.roots['example.org'], 'w'):
            pass
        self.assert_raises_regexp(
            FileIOError, 'Cannot create',
            self.resolver.resolve, self.ca.client, self.order, self.roots)
        self.assertEqual(0, self.ca.client.answer_challenge.call_count)


class CertificateLifecycleTest(TempDirTestMixin, UnitTestCase):
    """Tests for CertificateLifecycle."""
    # this is a test suite | pylint: disable=missing-docstring

    DOMAINS = ['example.org', 'www.example.org']
    FILES = ('account_key.json', 'key.pem', 'fullchain.pem')

    def setUp(self):  # pylint: disable=invalid-name
        super(CertificateLifecycleTest, self).setUp()
        self.ca = FakeCA()
        self.factory = mock.Mock(side_effect=self.ca.client_for)
        self.registry = default_registry()
        self.lifecycle = self.new_lifecycle()
        webroot = os.path.join(self.root, 'public_html')
        self.options = Options(
            roots=dict((domain, webroot) for domain in self.DOMAINS),
            ioplugins=self.FILES, cert_rsa=2048, email='a@example.org')
        self.account_key = gen_test_account_key()

    def new_lifecycle(self, cert=None):
        return CertificateLifecycle(
            self.registry, cert=cert,
            session=AcmeSession(client_factory=self.factory),
            resolver=ChallengeResolver(poll_interval=0))

    def test_get(self):
        self.lifecycle.get(self.account_key, None, self.options)
        existing = self.registry.load(self.FILES)
        self.assertEqual(self.account_key, existing.account_key)
        self.assertEqual(set(self.DOMAINS), set(cert_sans(existing.cert)))
        self.assertEqual([self.ca.ca_cert], existing.chain)
        self.assertEqual(2048, existing.key.key_size)
        self.assertEqual(
            existing.cert.public_key().public_numbers(),
            existing.key.public_key().public_numbers())
        self.assertEqual(existing.cert, self.lifecycle.cert)
        self.assertEqual([], os.listdir(os.path.join(
            self.root, 'public_html', '.well-known', 'acme-challenge')))

    def test_get_ecdsa(self):
        self.lifecycle.get(self.account_key, None, self.options._replace(
            cert_rsa=None, cert_ecdsa='prime256v1'))
        key = self.registry.load(self.FILES).key
        self.assertTrue(isinstance(key, ec.EllipticCurvePrivateKey))
        self.assertEqual('secp256r1', key.curve.name)

    def test_get_reuse_key(self):
        key = gen_pkey(curve='secp384r1')
        self.lifecycle.get(self.account_key, key,
                           self.options._replace(reuse_key=True))
        self.assertEqual(comparable(key),
                         comparable(self.registry.load(self.FILES).key))

    def test_get_new_key_unless_reuse(self):
        key = gen_pkey(curve='secp384r1')
        self.lifecycle.get(self.account_key, key, self.options)
        self.assertNotEqual(comparable(key),
                            comparable(self.registry.load(self.FILES).key))

    def test_missing_webroot_before_network(self):
        options = self.options._replace(roots={
            'example.org': '/var/www/html', 'www.example.org': None})
        self.assert_raises_regexp(
            MissingWebrootError,
            r'Root for the following host\(s\) were not specified: '
            r'www\.example\.org\. Try --default-root',
            self.lifecycle.get, self.account_key, None, options)
        self.assertEqual(0, self.factory.call_count)

    def test_conflicting_key_types_before_network(self):
        self.assert_raises_regexp(
            ConflictingKeyTypesError, '.*mutually exclusive',
            self.lifecycle.get, self.account_key, None,
            self.options._replace(cert_ecdsa='secp256r1'))
        self.assertEqual(0, self.factory.call_count)

    def test_unknown_curve_before_network(self):
        self.assert_raises_regexp(
            UnknownCurveError, '.*Acceptable curves: .*secp384r1',
            self.lifecycle.get, self.account_key, None,
            self.options._replace(cert_rsa=None, cert_ecdsa='foo'))
        self.assertEqual(0, self.factory.call_count)

    def test_bad_account_key_before_network(self):
        self.assert_raises_regexp(
            UnsupportedKeySizeError, '.*256 or 384',
            self.lifecycle.get, None, None, self.options._replace(
                account_key_type='ecdsa', account_key_size=521))
        self.assertEqual(0, self.factory.call_count)

    def test_issuance_failure_persists_nothing(self):
        self.ca.verify_status = messages.STATUS_INVALID
        self.ca.client.finalize_order.side_effect = acme_errors.IssuanceError(
            messages.Error.with_code('unauthorized', detail='no token'))
        self.assert_raises_regexp(
            IssuanceError, 'Certificate issuance has failed',
            self.lifecycle.get, self.account_key, None, self.options)
        for name in self.FILES:
            self.assertFalse(os.path.exists(name))
        self.assertTrue(self.lifecycle.cert is None)

    def test_order_not_ready_logs_hint(self):
        self.ca.verify_status = messages.STATUS_INVALID
        self.ca.client.finalize_order.side_effect = messages.Error.with_code(
            'orderNotReady', detail='Order is not ready')

        def get():
            self.assert_raises_regexp(
                messages.Error, '.*Order is not ready',
                self.lifecycle.get, self.account_key, None, self.options)

        self.assertTrue(self.check_logs(
            logging.ERROR, 'CA refused to issue the certificate', get))
        for name in self.FILES:
            self.assertFalse(os.path.exists(name))

    def test_failed_save_keeps_previous_files(self):
        self.lifecycle.get(self.account_key, None, self.options)
        with open('key.pem', 'rb') as key_file:
            old_key = key_file.read()
        os.remove('fullchain.pem')
        os.mkdir('fullchain.pem')
        self.assert_raises_regexp(
            FileIOError, 'Error when saving fullchain.pem',
            self.lifecycle.get, self.account_key, None, self.options)
        with open('key.pem', 'rb') as key_file:
            self.assertEqual(old_key, key_file.read())
        self.assertEqual(
            ['account_key.json', 'fullchain.pem', 'key.pem', 'public_html'],
            sorted(os.listdir(self.root)))

    def test_no_domains_before_network(self):
        self.assertTrue(Options().roots is None)
        self.assert_raises_regexp(
            ConfigurationError, 'At least one domain',
            self.lifecycle.get, self.account_key, None, Options())
        self.assertEqual(0, self.factory.call_count)

    def test_issued_cert_must_cover_domains(self):
        self.ca.issued_sans = ['example.org']
        self.assert_raises_regexp(
            ProtocolError, '.*does not cover: www.example.org',
            self.lifecycle.get, self.account_key, None, self.options)
        for name in self.FILES:
            self.assertFalse(os.path.exists(name))

    def test_valid_and_covers_no_cert(self):
        self.assertFalse(self.lifecycle.valid_and_covers(self.DOMAINS, 0))
        self.assertFalse(self.lifecycle.valid_and_covers([], 10 ** 9))

    def test_valid_and_covers_boundary(self):
        cert = gen_ss_cert(gen_pkey(curve='secp256r1'), self.DOMAINS,
                           validity=(20 * 24 * 3600))
        lifecycle = self.new_lifecycle(cert)
        expiry = cert.not_valid_after_utc
        threshold = 3600
        self.assertTrue(lifecycle.valid_and_covers(
            self.DOMAINS, threshold,
            now=(expiry - datetime.timedelta(seconds=threshold))))
        self.assertFalse(lifecycle.valid_and_covers(
            self.DOMAINS, threshold,
            now=(expiry - datetime.timedelta(seconds=threshold - 1))))
        self.assertTrue(lifecycle.valid_and_covers(self.DOMAINS[:1], 19))
        self.assertFalse(lifecycle.valid_and_covers(
            self.DOMAINS, 21 * 24 * 3600))

    def test_valid_and_covers_domain_mismatch(self):
        cert = gen_ss_cert(gen_pkey(curve='secp256r1'), self.DOMAINS)
        lifecycle = self.new_lifecycle(cert)
        for valid_min in (0, 10 ** 9):
            self.assert_raises_regexp(
                DomainMismatchError, '.*not declared as a certificate '
                r'subject \(example\.com\)',
                lifecycle.valid_and_covers,
                ['example.org', 'example.com'], valid_min)

    def test_revoke_without_cert(self):
        self.assert_raises_regexp(
            StateError, 'No existing certificate',
            self.lifecycle.revoke, self.account_key, self.options)
        self.assertEqual(0, self.factory.call_count)

    def test_revoke(self):
        cert = gen_ss_cert(gen_pkey(curve='secp256r1'), self.DOMAINS)
        lifecycle = self.new_lifecycle(cert)
        self.assertTrue(self.check_logs(
            logging.INFO, 'Certificate is revoked',
            lambda: self.assertTrue(
                lifecycle.revoke(self.account_key, self.options))))
        self.ca.client.revoke.assert_called_once_with(cert, rsn=0)

    def test_revoke_not_revoked(self):
        cert = gen_ss_cert(gen_pkey(curve='secp256r1'), self.DOMAINS)
        lifecycle = self.new_lifecycle(cert)
        self.ca.client.revoke.side_effect = messages.Error.with_code(
            'alreadyRevoked', detail='Certificate already revoked')
        self.assertTrue(self.check_logs(
            logging.WARNING, 'Certificate is not revoked',
            lambda: self.assertFalse(
                lifecycle.revoke(self.account_key, self.options))))

    def test_revoke_error(self):
        cert = gen_ss_cert(gen_pkey(curve='secp256r1'), self.DOMAINS)
        lifecycle = self.new_lifecycle(cert)
        self.ca.client.revoke.side_effect = messages.Error.with_code(
            'unauthorized', detail='nope')
        self.assert_raises_regexp(
            messages.Error, '.*nope',
            lifecycle.revoke, self.account_key, self.options)


class PortNumWarningTest(UnitTestCase):
    """Tests relating to the port number warning."""

    def _check_warn(self, should_log, path):
        """test whether the supplied path triggers the port number warning.

        ``should_log`` is a boolean indicating whether or not we expect the
        path to trigger a warning.
        ``path`` is the webroot path to check.
        """
        return self.assertEqual(
            self.check_logs(
                logging.WARNING,
                '.*looks like it is a port number.*',
                lambda: compute_roots([
                    Vhost('example.com', path),
                ], 'webroot')
            ),
            should_log,
        )

    def test_warn_port(self):
        """A bare port number triggers the warning."""
        self._check_warn(True, '8000')

    def test_warn_port_path(self):
        """``port_no:path`` triggers the warning."""
        self._check_warn(True, '8000:/webroot')

    def test_no_warn_path(self):
        """A bare path doesn't trigger the warning."""
        self._check_warn(False, '/my-web-root')

    def test_no_warn_bigport(self):
        """A number too big to be a port doesn't trigger the warning."""
        self._check_warn(False, '66000')


class ComputeRootsTest(UnitTestCase):
    """Tests for compute_roots."""
    # this is a test suite | pylint: disable=missing-docstring

    def test_default_root(self):
        self.assertEqual(
            {'example.com': '/var/www/html', 'www.example.com': '/opt/www'},
            compute_roots([Vhost.decode('example.com:/var/www/html'),
                           Vhost.decode('WWW.example.com')], '/opt/www'))

    def test_no_default_root(self):
        self.assertEqual(
            {'example.com': '/var/www/html', 'www.example.com': None},
            compute_roots([Vhost.decode('example.com:/var/www/html'),
                           Vhost.decode('www.example.com')], None))


class MainTest(TempDirTestMixin, UnitTestCase):
    """Unit tests for main()."""
    # this is a test suite | pylint: disable=missing-docstring

    FILES = '-f account_key.json -f key.pem -f fullchain.pem'

    @classmethod
    def _run(cls, args):
        return main(shlex.split(args))

    @mock.patch('sys.stdout')
    def test_exit_code_help_version_ok(self, dummy_stdout):
        # pylint: disable=unused-argument
        self.assertEqual(EXIT_HELP_VERSION_OK, self._run('--help'))
        self.assertEqual(EXIT_HELP_VERSION_OK, self._run('--version'))

    @mock.patch('sys.stderr')
    def test_error_exit_codes(self, dummy_stderr):
        # pylint: disable=unused-argument
        test_args = [
            '',  # no args - no good
            '--bar',  # unrecognized
            '-f foo.pem',  # unknown plugin
            # no domains
            self.FILES,
            # no root
            self.FILES + ' -d example.com',
            # no root with multiple domains
            self.FILES + ' -d example.com:public_html -d www.example.com',
            # bad validity
            self.FILES + ' -d example.com:public_html --valid-min 3w',
            # non-ASCII domain
            self.FILES + ' -d 例如.中国:public_html',
            # both RSA and ECDSA
            self.FILES + ' -d example.com:public_html --cert-rsa 2048 '
            '--cert-ecdsa secp256r1',
            # revoke without certificate
            '--revoke ' + self.FILES,
        ]
        # missing plugin coverage
        test_args.extend(['-d example.com:public_html %s' % rest for rest in [
            '-f account_key.json',
            '-f key.pem',
            '-f account_key.json -f key.pem',
            '-f key.pem -f cert.pem',
            '-f key.pem -f chain.pem',
            '-f fullchain.pem',
            '-f cert.pem -f fullchain.pem',
        ]])

        factory = mock.Mock(side_effect=AssertionError('no network'))
        with mock.patch('%s.acme_client_for' % __name__, factory):
            for args in test_args:
                self.assertEqual(
                    EXIT_ERROR, self._run(args),
                    'Wrong exit code for %s' % args)
        self.assertEqual(0, factory.call_count)

    @mock.patch('sys.stderr')
    def test_error_message(self, mock_stderr):
        self._run(self.FILES + ' -d example.com')
        written = ''.join(
            call[0][0] for call in mock_stderr.write.call_args_list)
        self.assertTrue(
            'Error: Root for the following host(s) were not specified' in
            written)

    @mock.patch('sys.stderr')
    def test_issue_renew_revoke(self, dummy_stderr):
        # pylint: disable=unused-argument
        ca = FakeCA()
        args = ('--account-key-type ecdsa --email a@example.org %s '
                '-d example.org:public_html -d www.example.org '
                '--default-root public_html' % self.FILES)
        with mock.patch('%s.acme_client_for' % __name__,
                        side_effect=ca.client_for) as factory:
            self.assertEqual(EXIT_RENEWAL, self._run(args))
            with open('fullchain.pem', 'rb') as chain_file:
                fullchain = chain_file.read()
            cert = x509.load_pem_x509_certificate(
                list(split_pems(fullchain))[0])
            self.assertEqual(['example.org', 'www.example.org'],
                             sorted(cert_sans(cert)))

            # still valid, no files touched
            self.assertEqual(EXIT_NO_RENEWAL, self._run(args))
            self.assertEqual(1, factory.call_count)
            with open('fullchain.pem', 'rb') as chain_file:
                self.assertEqual(fullchain, chain_file.read())

            # threshold above the certificate lifetime forces renewal
            self.assertEqual(EXIT_RENEWAL, self._run(
                args + ' --valid-min 91d'))

            # domain not covered by the existing certificate
            self.assertEqual(EXIT_ERROR, self._run(
                args + ' -d example.com'))

            self.assertEqual(EXIT_REVOKE_OK, self._run(
                '--revoke %s' % self.FILES))
            ca.client.revoke.side_effect = messages.Error.with_code(
                'alreadyRevoked')
            self.assertEqual(EXIT_NOT_REVOKED, self._run(
                '--revoke %s' % self.FILES))


if __name__ == '__main__':
    raise SystemExit(main())
