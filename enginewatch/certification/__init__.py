"""Engine certification — test suites, health probes, time-boxed verdicts."""
from .certifier import CERTIFICATION_TTL_DAYS, CertificationAuthority, CertificationResult

__all__ = ["CERTIFICATION_TTL_DAYS", "CertificationAuthority", "CertificationResult"]
