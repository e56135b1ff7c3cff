"""Query builders for the report engine API."""
from typing import Optional

from cronarchive.config import config
from cronarchive.model.period import Period

API_PATH = "/index.php"


def get_api_url(base_url: Optional[str] = None) -> str:
    """Get the API URL for the configured engine."""
    return f"{(base_url or config.BASE_URL).rstrip('/')}{API_PATH}"


def get_ping_params() -> dict[str, str]:
    """Params for a cheap authenticated call."""
    return {"module": "API", "method": "API.getMatomoVersion", "format": "json"}


def get_probe_params(site_id: int, period: Period) -> dict[str, str]:
    """Params for counting visits in a period."""
    return {
        "module": "API",
        "method": "VisitsSummary.getVisits",
        "idSite": str(site_id),
        "period": "range",
        "date": f"{period.date1.isoformat()},{period.date2.isoformat()}",
        "format": "json",
    }


def get_archive_params(site_id: int, period: Period, segment: Optional[str] = None) -> dict[str, str]:
    """Params for recomputing one archive."""
    params = {
        "module": "API",
        "method": "CoreAdminHome.archiveReports",
        "idSite": str(site_id),
        "period": period.kind.value,
        "date": period.label,
        "format": "json",
        "trigger": "archivephp",
    }
    if segment:
        params["segment"] = segment
    return params
