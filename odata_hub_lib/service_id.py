"""
Derives a compact service identifier from an OData service URL.
"""

import re
from urllib.parse import urlparse

from .constants import FALLBACK_SERVICE_ID, MAX_SERVICE_ID_LENGTH, NOISE_PATH_SEGMENTS

_SAP_SERVICE_PATTERN = re.compile(r'/([A-Z][A-Z0-9_]*_SRV)(?=[/?#;(]|$)')
_SAP_COMPACT_PATTERN = re.compile(r'^([A-Z])[A-Z]*_?(\d+)')
_SVC_PATTERN = re.compile(r'/([A-Za-z][A-Za-z0-9_]*)\.svc(?=[/?#]|$)')
_ODATA_PATH_PATTERN = re.compile(r'/odata/([A-Za-z][A-Za-z0-9_]*)')


def derive_service_id(service_url: str) -> str:
    """Generate a compact service identifier from the service URL.

    The result is deterministic, at most eight characters of ``[A-Za-z0-9_]``
    and never empty. Rules are tried in order and the first match wins.
    """
    service_url = service_url or ""

    # SAP gateway services: /sap/opu/odata/sap/ZODD_000_SRV -> Z000
    match = _SAP_SERVICE_PATTERN.search(service_url)
    if match:
        svc_name = match.group(1)
        compact = _SAP_COMPACT_PATTERN.search(svc_name)
        if compact:
            return f"{compact.group(1)}{compact.group(2)}"[:MAX_SERVICE_ID_LENGTH]
        return svc_name[:MAX_SERVICE_ID_LENGTH]

    # .svc endpoints: /Northwind.svc -> NorthSvc
    match = _SVC_PATTERN.search(service_url)
    if match:
        return f"{match.group(1)[:5]}Svc"

    # Generic /odata/<name> paths
    match = _ODATA_PATH_PATTERN.search(service_url)
    if match:
        return match.group(1)[:MAX_SERVICE_ID_LENGTH]

    try:
        path = urlparse(service_url).path
    except ValueError:
        return FALLBACK_SERVICE_ID

    segments = [p for p in path.split('/') if p and p.lower() not in NOISE_PATH_SEGMENTS]
    if segments:
        clean_segment = re.sub(r'[^a-zA-Z0-9_]', '_', segments[-1])
        clean_segment = re.sub(r'_+', '_', clean_segment).strip('_')
        if len(clean_segment) > 1:
            return clean_segment[:MAX_SERVICE_ID_LENGTH]

    return FALLBACK_SERVICE_ID
