"""Local SSL tooling: certificate validation and bundle <-> PFX conversion."""

import re
import ssl
import tempfile
import zipfile
from datetime import datetime, timezone
from fnmatch import fnmatch
from pathlib import Path

from cryptography import x509
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.serialization import pkcs12
from cryptography.x509.oid import NameOID
from rich import print

from .types import CertReport
from .utils import error, log, success

PFX_OUTPUT_DIR = Path("pfx-files")
SSL_OUTPUT_DIR = Path("ssl-bundles")
DATE_FORMAT = "%d-%m-%Y"

CA_PATTERNS = ("*ca-bundle*", "*ca_bundle*")
KEY_PATTERNS = ("*.key", "*private*key*")


def load_certificate(data: bytes) -> x509.Certificate:
    """Parse a PEM certificate, falling back to DER."""
    try:
        return x509.load_pem_x509_certificate(data)
    except ValueError:
        return x509.load_der_x509_certificate(data)


def common_name(cert: x509.Certificate) -> str | None:
    attrs = cert.subject.get_attributes_for_oid(NameOID.COMMON_NAME)
    return str(attrs[0].value) if attrs else None


def cert_report(cert: x509.Certificate, now: datetime | None = None) -> CertReport:
    now = now or datetime.now(timezone.utc)
    expires = cert.not_valid_after_utc
    return {
        "subject": cert.subject.rfc4514_string(),
        "issuer": cert.issuer.rfc4514_string(),
        "expires": expires.strftime(DATE_FORMAT),
        "days_left": (expires - now).days,
    }


def _check_expiry(report: CertReport, label: str = "SSL certificate") -> CertReport:
    if report["days_left"] < 0:
        error(f"SSL certificate has expired on: {report['expires']}")
    success(f"{label} is valid")
    success(f"Expires on: {report['expires']}")
    success(f"Days remaining: {report['days_left']}")
    return report


def validate_domain(domain: str, port: int = 443, timeout: float = 10) -> CertReport:
    """Fetch the certificate a domain serves (with SNI) and check its expiry."""
    log(f"Validating SSL certificate for domain: {domain}")
    try:
        pem = ssl.get_server_certificate((domain, port), timeout=timeout)
    except (OSError, ssl.SSLError) as e:
        error(f"Failed to retrieve SSL certificate for {domain}: {e}")

    report = _check_expiry(cert_report(load_certificate(pem.encode())))
    log(f"Certificate subject: {report['subject']}")
    return report


def _read(path: Path, label: str) -> bytes:
    if not path.is_file():
        error(f"{label} not found: {path}")
    return path.read_bytes()


def validate_cert_file(path: Path) -> CertReport:
    log(f"Validating SSL certificate file: {path}")
    try:
        cert = load_certificate(_read(path, "Certificate file"))
    except ValueError:
        error("Invalid certificate file format")

    report = _check_expiry(cert_report(cert))
    log(f"Certificate subject: {report['subject']}")
    log(f"Certificate issuer: {report['issuer']}")
    return report


def _public_bytes(public_key) -> bytes:
    return public_key.public_bytes(
        serialization.Encoding.DER, serialization.PublicFormat.SubjectPublicKeyInfo
    )


def key_matches(cert: x509.Certificate, key) -> bool:
    return _public_bytes(cert.public_key()) == _public_bytes(key.public_key())


def issued_by_any(cert: x509.Certificate, cas: list[x509.Certificate]) -> bool:
    """True if one of the CA certificates signed cert."""
    for ca in cas:
        try:
            cert.verify_directly_issued_by(ca)
            return True
        except (ValueError, TypeError, InvalidSignature):
            continue
    return False


def validate_bundle(cert_path: Path, key_path: Path, ca_path: Path) -> CertReport:
    """Check certificate, private key and CA bundle belong together and are current."""
    log("Validating SSL bundle (certificate + private key + CA bundle)")
    cert_data = _read(cert_path, "Certificate file")
    key_data = _read(key_path, "Private key file")
    ca_data = _read(ca_path, "CA bundle file")

    try:
        cert = load_certificate(cert_data)
    except ValueError:
        error("Invalid certificate file format")
    success("Certificate file is valid")

    try:
        key = serialization.load_pem_private_key(key_data, password=None)
    except (ValueError, TypeError):
        error("Invalid private key file format")
    success("Private key file is valid")

    if not key_matches(cert, key):
        error("Private key does not match the certificate")
    success("Private key matches the certificate")

    try:
        cas = x509.load_pem_x509_certificates(ca_data)
    except ValueError:
        error("Invalid CA bundle file format")
    success("CA bundle file is valid")

    if not issued_by_any(cert, cas):
        error("Certificate chain verification failed")
    success("Certificate chain is valid")

    return _check_expiry(cert_report(cert), "SSL bundle")


def is_ca_file(name: str) -> bool:
    lowered = name.lower()
    if any(fnmatch(lowered, p) for p in CA_PATTERNS):
        return True
    # "ca.crt", "root-ca.crt", "ca_intermediate.crt" but not "certificate.crt"
    return lowered.endswith(".crt") and bool(
        re.search(r"(^|[^a-z])ca([^a-z]|$)", lowered[: -len(".crt")])
    )


def find_bundle_files(directory: Path) -> tuple[Path | None, Path | None, Path | None]:
    """Locate certificate, private key and CA bundle in an extracted SSL bundle.

    :return: (certificate, key, ca_bundle); missing entries are None
    """
    files = sorted(p for p in Path(directory).rglob("*") if p.is_file())
    cert = next(
        (p for p in files if p.name.lower().endswith(".crt") and not is_ca_file(p.name)), None
    )
    key = next(
        (p for p in files if any(fnmatch(p.name.lower(), pat) for pat in KEY_PATTERNS)), None
    )
    ca = next((p for p in files if is_ca_file(p.name)), None)
    return cert, key, ca


def safe_domain(domain: str) -> str:
    return domain.replace(" ", "").replace("*", "wildcard") or "certificate"


def pfx_password(domain: str, year: int | None = None) -> str:
    """``Domain@YYYY``: every word capitalised, cut at the first dot.

    >>> pfx_password("example.com", 2026)
    'Example@2026'
    """
    year = year or datetime.now().year
    capitalised = re.sub(r"\b\w", lambda m: m.group(0).upper(), domain)
    return f"{capitalised.split('.')[0]}@{year}"


def _bundle_to_pfx(directory: Path, output_dir: Path, year: int | None) -> dict:
    log("Files found in SSL bundle:")
    for path in sorted(p for p in directory.rglob("*") if p.is_file()):
        log(f"  {path.name}")

    cert_path, key_path, ca_path = find_bundle_files(directory)
    if not cert_path:
        error("Certificate file (.crt) not found in SSL bundle")
    if not key_path:
        error("Private key file (.key) not found in SSL bundle")
    success(f"Found certificate file: {cert_path.name}")
    success(f"Found private key file: {key_path.name}")
    if ca_path:
        success(f"Found CA bundle file: {ca_path.name}")

    try:
        cert = load_certificate(cert_path.read_bytes())
    except ValueError:
        error(f"Invalid certificate file format: {cert_path.name}")
    try:
        key = serialization.load_pem_private_key(key_path.read_bytes(), password=None)
    except (ValueError, TypeError):
        error(f"Invalid private key file format: {key_path.name}")
    cas = []
    if ca_path:
        try:
            cas = x509.load_pem_x509_certificates(ca_path.read_bytes())
        except ValueError:
            error(f"Invalid CA bundle file format: {ca_path.name}")

    domain = safe_domain(common_name(cert) or "")
    password = pfx_password(domain, year)

    output_dir.mkdir(parents=True, exist_ok=True)
    pfx_path = output_dir / f"{domain}.pfx"
    log(f"Creating PFX file with password: {password}")
    pfx_path.write_bytes(
        pkcs12.serialize_key_and_certificates(
            domain.encode(),
            key,
            cert,
            cas or None,
            serialization.BestAvailableEncryption(password.encode()),
        )
    )
    success(f"PFX file created successfully: {pfx_path}")
    success(f"PFX password: {password}")
    if not cas:
        log("Note: CA bundle not found, PFX created without intermediate certificates")

    password_file = output_dir / f"{domain}_password.txt"
    password_file.write_text(password + "\n")
    success(f"Password saved to: {password_file}")

    return {
        "domain": domain,
        "pfx": pfx_path,
        "password": password,
        "password_file": password_file,
        "chain": len(cas),
    }


def bundle_to_pfx(
    bundle: Path, output_dir: Path = PFX_OUTPUT_DIR, year: int | None = None
) -> dict:
    """Convert an SSL bundle (ZIP file or directory) to a password protected PFX.

    The PFX is named after the certificate CN and protected with
    :func:`pfx_password`; the password is also written next to it.

    :param bundle: ZIP file or directory holding .crt, .key and optional CA bundle
    :param output_dir: Where the .pfx and password file are written
    :param year: Year used in the password (default: current year)
    :return: Summary with domain, pfx, password, password_file and chain count
    """
    log("Converting SSL bundle to PFX format")
    bundle = Path(bundle)
    if bundle.is_dir():
        log("Using SSL bundle directory...")
        result = _bundle_to_pfx(bundle, Path(output_dir), year)
    elif bundle.is_file():
        log("Extracting SSL bundle ZIP file...")
        with tempfile.TemporaryDirectory() as tmp:
            try:
                with zipfile.ZipFile(bundle) as zf:
                    zf.extractall(tmp)
            except zipfile.BadZipFile:
                error(
                    "Failed to extract SSL bundle ZIP file. Please check if it's a valid ZIP file."
                )
            result = _bundle_to_pfx(Path(tmp), Path(output_dir), year)
    else:
        error(f"SSL bundle path not found: {bundle}")

    print()
    print("=== PFX Conversion Summary ===")
    print(f"Domain: {result['domain']}")
    print(f"PFX File: {result['pfx']}")
    print(f"Password: {result['password']}")
    print(f"Password File: {result['password_file']}")
    print("============================")
    return result


def _generate_csr(key, name: str) -> bytes | None:
    """PEM CSR with CN=name, or None if the key type cannot sign one."""
    try:
        csr = (
            x509.CertificateSigningRequestBuilder()
            .subject_name(x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, name)]))
            .sign(key, hashes.SHA256())
        )
    except (TypeError, ValueError):
        return None
    return csr.public_bytes(serialization.Encoding.PEM)


def pfx_to_bundle(pfx: Path, password: str, output_dir: Path = SSL_OUTPUT_DIR) -> Path:
    """Split a PFX into key, certificate, CA bundle and CSR, zipped together.

    :param pfx: PFX/P12 file
    :param password: PFX password
    :param output_dir: Where <name>_ssl_bundle.zip is written
    :return: Path of the ZIP file
    """
    log("Converting PFX to SSL bundle format")
    pfx = Path(pfx)
    data = _read(pfx, "PFX file")
    name = pfx.stem

    log("Extracting private key...")
    try:
        key, cert, cas = pkcs12.load_key_and_certificates(data, password.encode() or None)
    except ValueError:
        error("Failed to extract private key from PFX file. Check password.")
    if key is None:
        error("Failed to extract private key from PFX file. Check password.")
    success("Private key extracted successfully")

    log("Extracting certificate...")
    if cert is None:
        error("Failed to extract certificate from PFX file")
    success("Certificate extracted successfully")

    files = {
        f"{name}.key": key.private_bytes(
            serialization.Encoding.PEM,
            serialization.PrivateFormat.PKCS8,
            serialization.NoEncryption(),
        ),
        f"{name}.crt": cert.public_bytes(serialization.Encoding.PEM),
    }

    log("Extracting CA bundle...")
    if cas:
        files[f"{name}_ca_bundle.crt"] = b"".join(
            ca.public_bytes(serialization.Encoding.PEM) for ca in cas
        )
        success("CA bundle extracted successfully")
    else:
        log("No CA bundle found in PFX file")

    log("Generating CSR from private key...")
    csr = _generate_csr(key, name)
    if csr:
        files[f"{name}.csr"] = csr
        success("CSR generated successfully")
    else:
        log("CSR generation skipped")

    output_dir = Path(output_dir).resolve()
    output_dir.mkdir(parents=True, exist_ok=True)
    zip_path = output_dir / f"{name}_ssl_bundle.zip"
    log("Creating SSL bundle ZIP file...")
    with zipfile.ZipFile(zip_path, "w", zipfile.ZIP_DEFLATED) as zf:
        for filename, content in files.items():
            zf.writestr(filename, content)
    success(f"SSL bundle ZIP created: {zip_path}")

    print()
    print("=== PFX to SSL Conversion Summary ===")
    print(f"Source PFX: {pfx}")
    print(f"SSL Bundle: {zip_path}")
    print("Files included:")
    print(f"  - {name}.key (Private Key)")
    print(f"  - {name}.crt (Certificate)")
    if cas:
        print(f"  - {name}_ca_bundle.crt (CA Bundle)")
    if csr:
        print(f"  - {name}.csr (Certificate Signing Request)")
    print("=====================================")
    return zip_path
