# SPDX-License-Identifier: LGPL-2.1-or-later
#
# This file is part of efikit.
#
# efikit is free software; you can redistribute it and/or modify it
# under the terms of the GNU Lesser General Public License as published by
# the Free Software Foundation; either version 2.1 of the License, or
# (at your option) any later version.
#
# efikit is distributed in the hope that it will be useful, but
# WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE. See the GNU
# General Public License for more details.
#
# You should have received a copy of the GNU Lesser General Public License
# along with efikit; If not, see <https://www.gnu.org/licenses/>.

# pylint: disable=missing-docstring,import-outside-toplevel

"""Secure Boot key hierarchy: PK, KEK and DB.

Keys are enrolled bottom up. DB and KEK are appended while the firmware is
still in SetupMode, and PK goes last: enrolling PK is what switches the
firmware to UserMode, after which every update to PK, KEK, db or dbx has to
be signed by a key that is already enrolled.
"""

import datetime
import enum
import logging
import os
import socket
import tempfile
import uuid
from pathlib import Path
from typing import Optional

from efikit.efivars import FirmwareVariableAccessor
from efikit.errors import (
    EnrollmentOrderError,
    KeysExistError,
    MissingKeyError,
    TrustStateError,
    ValidationError,
)
from efikit.signing import EfiTools
from efikit.util import temporary_umask

log = logging.getLogger(__name__)

ROLES = ('PK', 'KEK', 'DB')

# Firmware variable each role's signature list is stored in, and the role whose key signs updates to it.
ROLE_VARIABLES = {
    'PK':  ('PK',  'PK'),
    'KEK': ('KEK', 'PK'),
    'DB':  ('db',  'KEK'),
}  # fmt: skip

DEFAULT_VALIDITY_DAYS = 3650


class TrustState(enum.Enum):
    SETUP = 'SetupMode'
    USER = 'UserMode'

    def __str__(self) -> str:
        return self.value


def generate_key_cert_pair(
    common_name: str,
    valid_days: int,
    keylength: int = 2048,
) -> tuple[bytes, bytes]:
    from cryptography import x509
    from cryptography.hazmat.primitives import hashes, serialization
    from cryptography.hazmat.primitives.asymmetric import rsa

    # 2048 bits is what firmware implementations are documented to accept.

    now = datetime.datetime.now(datetime.timezone.utc)

    key = rsa.generate_private_key(
        public_exponent=65537,
        key_size=keylength,
    )
    name = x509.Name([x509.NameAttribute(x509.oid.NameOID.COMMON_NAME, common_name)])
    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .not_valid_before(now)
        .not_valid_after(now + datetime.timedelta(days=valid_days))
        .serial_number(x509.random_serial_number())
        .public_key(key.public_key())
        .add_extension(
            x509.BasicConstraints(ca=False, path_length=None),
            critical=True,
        )
        .sign(
            private_key=key,
            algorithm=hashes.SHA256(),
        )
    )

    cert_pem = cert.public_bytes(
        encoding=serialization.Encoding.PEM,
    )
    key_pem = key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.TraditionalOpenSSL,
        encryption_algorithm=serialization.NoEncryption(),
    )

    return key_pem, cert_pem


def pem_to_der(cert_pem: bytes) -> bytes:
    from cryptography import x509
    from cryptography.hazmat.primitives import serialization

    return x509.load_pem_x509_certificate(cert_pem).public_bytes(serialization.Encoding.DER)


# The length of CN must not exceed 64 bytes, and each certificate appends its role.
CN_MAX_BYTES = 64
CN_ROLE_SUFFIX_BYTES = max(len(f' {role}') for role in ROLES)


def default_common_name() -> str:
    cn = f'Secure Boot key on host {socket.getfqdn()}'
    limit = CN_MAX_BYTES - CN_ROLE_SUFFIX_BYTES
    if len(cn.encode()) > limit:
        cn = cn.encode()[: limit - 3].decode(errors='ignore') + '...'
    return cn


def role_common_name(common_name: str, role: str) -> str:
    cn = f'{common_name} {role}'
    if not common_name or len(cn.encode()) > CN_MAX_BYTES:
        raise ValidationError(
            f'Common name {common_name!r} must be between 1 and '
            f'{CN_MAX_BYTES - CN_ROLE_SUFFIX_BYTES} bytes long'
        )
    return cn


class KeyLifecycleManager:
    def __init__(
        self,
        key_dir: Path,
        efitools: EfiTools,
        firmware: FirmwareVariableAccessor,
    ) -> None:
        self.key_dir = key_dir
        self.efitools = efitools
        self.firmware = firmware

    def path(self, role: str, suffix: str, directory: Optional[Path] = None) -> Path:
        return (directory or self.key_dir) / f'{role}.{suffix}'

    def owner_guid(self) -> str:
        path = self.key_dir / 'GUID.txt'
        try:
            return path.read_text().strip()
        except FileNotFoundError as e:
            raise MissingKeyError(path) from e

    def require(self, *paths: Path) -> None:
        for path in paths:
            if not path.exists():
                raise MissingKeyError(path)

    def create_keys(
        self,
        common_name: str,
        more: bool = False,
        validity: int = DEFAULT_VALIDITY_DAYS,
    ) -> list[Path]:
        """Generate the three keypairs plus PK.auth and PKno.auth.

        With ``more``, also write the KEK and DB signature lists, their signed
        updates, and DER copies of all certificates.
        """
        existing = [p for role in ROLES if (p := self.path(role, 'key')).exists()]
        if existing:
            raise KeysExistError(
                f'{", ".join(str(p) for p in existing)} already exist, refusing to overwrite'
            )
        names = {role: role_common_name(common_name, role) for role in ROLES}

        with temporary_umask(0o077):
            self.key_dir.mkdir(parents=True, exist_ok=True)
            self.key_dir.chmod(0o700)

            # Everything is generated next to its final location and only moved
            # into place once the whole set exists, so a failure leaves no keys behind.
            with tempfile.TemporaryDirectory(prefix='.efikit-', dir=self.key_dir) as tmpdir:
                staging = Path(tmpdir)
                staged = self.generate_keys(staging, names, more, validity)

                written = []
                for path in staged:
                    target = self.key_dir / path.name
                    os.replace(path, target)
                    written += [target]

        # Certificates are readable by other tools, the keys stay owner-only.
        self.key_dir.chmod(0o755)
        return written

    def generate_keys(
        self,
        directory: Path,
        names: dict[str, str],
        more: bool,
        validity: int,
    ) -> list[Path]:
        written = []

        guid = str(uuid.uuid4())
        (directory / 'GUID.txt').write_text(f'{guid}\n')
        written += [directory / 'GUID.txt']

        for role in ROLES:
            key_pem, cert_pem = generate_key_cert_pair(names[role], validity)

            key = self.path(role, 'key', directory)
            log.info('Writing %s private key to %s', role, self.path(role, 'key'))
            key.write_bytes(key_pem)
            key.chmod(0o400)

            cert = self.path(role, 'pem', directory)
            log.info('Writing %s certificate to %s', role, self.path(role, 'pem'))
            cert.write_bytes(cert_pem)
            cert.chmod(0o644)
            written += [key, cert]

            if more:
                der = self.path(role, 'cer', directory)
                der.write_bytes(pem_to_der(cert_pem))
                der.chmod(0o644)
                written += [der]

        for role in ROLES if more else ('PK',):
            esl = self.path(role, 'esl', directory)
            self.efitools.cert_to_esl(self.path(role, 'pem', directory), esl, guid)
            written += [esl]

            var, signer = ROLE_VARIABLES[role]
            auth = self.path(role, 'auth', directory)
            self.efitools.sign_esl(
                var, esl, auth, self.path(signer, 'key', directory), self.path(signer, 'pem', directory), guid
            )
            written += [auth]

        # Applying an empty signed PK update removes the PK and returns the firmware to SetupMode.
        no_pk = directory / 'PKno.auth'
        self.efitools.sign_esl(
            'PK', os.devnull, no_pk, self.path('PK', 'key', directory), self.path('PK', 'pem', directory), guid
        )
        written += [no_pk]

        return written

    def trust_state(self) -> TrustState:
        return TrustState.SETUP if self.firmware.setup_mode() else TrustState.USER

    def require_setup_mode(self, what: str) -> None:
        if (state := self.trust_state()) != TrustState.SETUP:
            raise TrustStateError(f'Cannot {what}: firmware is in {state}')

    def enroll_personal_keys(self, include_db: bool = True) -> None:
        """Append DB (optionally) and KEK certificates without a signed update."""
        kek = self.path('KEK', 'pem')
        db = self.path('DB', 'pem')
        self.require(kek, *([db] if include_db else []))
        self.require_setup_mode('enroll keys')

        if include_db:
            self.efitools.update_var('db', cert=db, append=True)
            log.info('Enrolled %s into db', db)
        else:
            log.info('Not enrolling DB certificate')

        self.efitools.update_var('KEK', cert=kek, append=True)
        log.info('Enrolled %s into KEK', kek)

    def activate_user_mode(self) -> TrustState:
        """Enroll PK. This must come after KEK, the firmware enforces signatures from here on."""
        auth = self.path('PK', 'auth')
        self.require(auth)
        self.require_setup_mode('enroll PK')

        if self.firmware.variable_is_empty('KEK'):
            raise EnrollmentOrderError('KEK is not enrolled yet, run "keys install" before enrolling PK')

        self.efitools.update_var('PK', auth=auth)

        state = self.trust_state()
        if state == TrustState.USER:
            log.info('Firmware is now in %s', state)
        else:
            log.warning('PK was written but firmware still reports %s', state)
        return state

    def list_keys(self) -> str:
        return self.efitools.read_vars()
