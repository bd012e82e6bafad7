"""TLS settings built from a profile file and a certificate pair, reloaded on change."""

import enum
import logging
import os
import threading
from dataclasses import dataclass, field

import yaml
from cryptography import x509
from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import serialization

log = logging.getLogger(__name__)

REQUIRE_AND_VERIFY_CLIENT_CERT = "RequireAndVerifyClientCert"


class TlsConfigError(Exception):
    """Raised when the TLS profile or the certificate cannot be used."""


class TlsVersion(str, enum.Enum):
    """TLS protocol versions accepted in a TLS profile."""

    TLS10 = "VersionTLS10"
    TLS11 = "VersionTLS11"
    TLS12 = "VersionTLS12"
    TLS13 = "VersionTLS13"

    @property
    def number(self):
        """The protocol version number used on the wire."""
        return _VERSION_NUMBERS[self]


_VERSION_NUMBERS = {
    TlsVersion.TLS10: 0x0301,
    TlsVersion.TLS11: 0x0302,
    TlsVersion.TLS12: 0x0303,
    TlsVersion.TLS13: 0x0304,
}

CIPHER_SUITES = {
    "TLS_RSA_WITH_AES_128_CBC_SHA": 0x002F,
    "TLS_RSA_WITH_AES_256_CBC_SHA": 0x0035,
    "TLS_RSA_WITH_AES_128_GCM_SHA256": 0x009C,
    "TLS_RSA_WITH_AES_256_GCM_SHA384": 0x009D,
    "TLS_AES_128_GCM_SHA256": 0x1301,
    "TLS_AES_256_GCM_SHA384": 0x1302,
    "TLS_CHACHA20_POLY1305_SHA256": 0x1303,
    "TLS_ECDHE_ECDSA_WITH_AES_128_CBC_SHA": 0xC009,
    "TLS_ECDHE_ECDSA_WITH_AES_256_CBC_SHA": 0xC00A,
    "TLS_ECDHE_RSA_WITH_AES_128_CBC_SHA": 0xC013,
    "TLS_ECDHE_RSA_WITH_AES_256_CBC_SHA": 0xC014,
    "TLS_ECDHE_ECDSA_WITH_AES_128_GCM_SHA256": 0xC02B,
    "TLS_ECDHE_ECDSA_WITH_AES_256_GCM_SHA384": 0xC02C,
    "TLS_ECDHE_RSA_WITH_AES_128_GCM_SHA256": 0xC02F,
    "TLS_ECDHE_RSA_WITH_AES_256_GCM_SHA384": 0xC030,
    "TLS_ECDHE_RSA_WITH_CHACHA20_POLY1305_SHA256": 0xCCA8,
    "TLS_ECDHE_ECDSA_WITH_CHACHA20_POLY1305_SHA256": 0xCCA9,
}
_CIPHER_NAMES = {number: name for name, number in CIPHER_SUITES.items()}


@dataclass
class Certificate:
    """A certificate chain with its private key; ``leaf`` is the first certificate."""

    cert_pem: bytes
    key_pem: bytes
    chain: list
    leaf: x509.Certificate

    @property
    def dns_names(self):
        """DNS names from the leaf's subject alternative name extension."""
        try:
            ext = self.leaf.extensions.get_extension_for_class(x509.SubjectAlternativeName)
        except x509.ExtensionNotFound:
            return []
        return ext.value.get_values_for_type(x509.DNSName)


@dataclass
class TlsConfig:
    """Server-side TLS settings; ``None`` ciphers and version 0 mean defaults."""

    cipher_suites: list = None
    min_version: int = 0
    certificates: list = field(default_factory=list)
    client_cas: object = None
    client_auth: str = REQUIRE_AND_VERIFY_CLIENT_CERT


def get_cipher_suites(cipher_names):
    """Map cipher suite names to their numbers; no names means ``None`` (defaults)."""
    if not cipher_names:
        return None
    result = []
    for name in cipher_names:
        if name not in CIPHER_SUITES:
            raise TlsConfigError(f"unknown cipher suite: {name}")
        result.append(CIPHER_SUITES[name])
    return result


def get_min_tls_version(version):
    """Map a profile TLS version to its number; an empty version means 0 (default)."""
    if version is None or version == "":
        return 0
    value = version.value if isinstance(version, TlsVersion) else version
    try:
        return TlsVersion(value).number
    except ValueError:
        raise TlsConfigError(f"unsupported TLS version: {value}") from None


def load_certificates(cert_path, key_path):
    """Load a PEM certificate chain and its matching private key."""
    with open(cert_path, "rb") as cert_file:
        cert_bytes = cert_file.read()
    with open(key_path, "rb") as key_file:
        key_bytes = key_file.read()
    try:
        chain = x509.load_pem_x509_certificates(cert_bytes)
        private_key = serialization.load_pem_private_key(key_bytes, None)
        _check_key_matches(chain[0], private_key)
    except (ValueError, TypeError, UnsupportedAlgorithm) as err:
        raise TlsConfigError(f"failed to load certificate: {err}") from err
    return Certificate(cert_pem=cert_bytes, key_pem=key_bytes, chain=chain, leaf=chain[0])


def _check_key_matches(certificate, private_key):
    def spki(public_key):
        return public_key.public_bytes(
            serialization.Encoding.DER, serialization.PublicFormat.SubjectPublicKeyInfo
        )

    if spki(certificate.public_key()) != spki(private_key.public_key()):
        raise ValueError("private key does not match public key")


def _load_tls_profile(profile_path):
    try:
        profile_file = open(profile_path, encoding="utf-8")
    except FileNotFoundError:
        raise
    except OSError as err:
        raise TlsConfigError(f"error opening file: {err}") from err
    with profile_file:
        try:
            data = yaml.safe_load(profile_file)
        except yaml.YAMLError as err:
            raise TlsConfigError(f"error decoding tls config: {err}") from err
    if data is None:
        raise TlsConfigError("error decoding tls config: EOF")
    if not isinstance(data, dict):
        raise TlsConfigError(
            f"error decoding tls config: cannot unmarshal {type(data).__name__} into TlsProfile"
        )
    ciphers = data.get("ciphers")
    if ciphers is not None and not (
        isinstance(ciphers, list) and all(isinstance(c, str) for c in ciphers)
    ):
        raise TlsConfigError("error decoding tls config: ciphers must be a list of strings")
    min_version = data.get("minTLSVersion")
    if min_version is not None and not isinstance(min_version, str):
        raise TlsConfigError("error decoding tls config: minTLSVersion must be a string")
    return ciphers or [], min_version or ""


def _load_cipher_suites_and_min_version(config_path):
    try:
        ciphers, version = _load_tls_profile(config_path)
    except TlsConfigError as err:
        raise TlsConfigError(f"could not load tls config: {err}") from err
    try:
        numbers = get_cipher_suites(ciphers)
    except TlsConfigError as err:
        raise TlsConfigError(f"could not get cipher suite numbers: {err}") from err
    try:
        min_version = get_min_tls_version(version)
    except TlsConfigError as err:
        raise TlsConfigError(f"could not get minimum TLS version: {err}") from err
    return numbers, min_version


class TlsWatch:
    """Keeps TLS settings in sync with a profile file and a certificate directory."""

    def __init__(self, config_dir, tls_profile_file_name, cert_and_key_dir, certs_name,
                 key_name, auth_config):
        self._lock = threading.RLock()
        self._config_dir = config_dir
        self._tls_profile_file_name = tls_profile_file_name
        self._cert_and_key_dir = cert_and_key_dir
        self._certs_name = certs_name
        self._key_name = key_name
        self._auth_config = auth_config

        self._tls_profile_error = TlsConfigError("tls profile not loaded")
        self._ciphers = None
        self._min_version = 0

        self._certificate = None
        self._cert_error = TlsConfigError("certificate not loaded")

    def add_to_filewatch(self, watch):
        """Register reload callbacks for the profile and certificate directories."""
        watch.add(self._config_dir, self._reload_tls_profile)
        watch.add(self._cert_and_key_dir, self._reload_certificate)

    def reload(self):
        """Reload both the TLS profile and the certificate."""
        self._reload_tls_profile()
        self._reload_certificate()

    def get_config(self):
        """Return the current settings, or raise the error that prevents them."""
        client_cas = self._auth_config.get_client_ca()
        with self._lock:
            if self._tls_profile_error is not None:
                raise self._tls_profile_error
            if self._cert_error is not None:
                raise self._cert_error
            return TlsConfig(
                cipher_suites=list(self._ciphers) if self._ciphers is not None else None,
                min_version=self._min_version,
                certificates=[self._certificate],
                client_cas=client_cas,
            )

    def _reload_tls_profile(self):
        path = os.path.join(self._config_dir, self._tls_profile_file_name)
        with self._lock:
            self._tls_profile_error = None
            try:
                ciphers, min_version = _load_cipher_suites_and_min_version(path)
            except FileNotFoundError:
                self._ciphers = None
                self._min_version = 0
                return
            except TlsConfigError as err:
                log.error("Failed to load TLS configuration: %s", err)
                self._tls_profile_error = TlsConfigError(
                    f"failed to load TLS configuration: {err}"
                )
                return

            log.info("Loaded TLS configuration.")
            if min_version == 0:
                log.debug("Min TLS version was not set in the config file. Using default.")
            else:
                log.debug("Set min TLS version: 0x%04x", min_version)
            if ciphers is None:
                log.debug("Ciphers were not set in the config file. Using default.")
            else:
                log.debug("Set ciphers: %s", ", ".join(_CIPHER_NAMES[c] for c in ciphers))

            self._ciphers = ciphers
            self._min_version = min_version

    def _reload_certificate(self):
        with self._lock:
            self._cert_error = None
            try:
                certificate = load_certificates(
                    os.path.join(self._cert_and_key_dir, self._certs_name),
                    os.path.join(self._cert_and_key_dir, self._key_name),
                )
            except (OSError, TlsConfigError) as err:
                self._cert_error = err
                return
            log.info("Loaded TLS certificate.")
            self._certificate = certificate