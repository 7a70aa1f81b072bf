from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from .errors import ConfigError
from .matcher import Matcher


JOB_KEYS = {
    "path", "hash", "search", "regex", "to", "recursive", "read_existing",
    "telegram_token", "virustotal_token",
}


@dataclass
class JobSpec:
    to: List[str]
    path: Optional[str] = None
    hashes: Optional[List[str]] = None
    search: Optional[str] = None
    regex: Optional[str] = None
    recursive: bool = False
    read_existing: bool = True
    telegram_token: Optional[str] = None
    virustotal_token: Optional[str] = None

    @property
    def kind(self) -> str:
        return "file" if self.path is not None else "hash"

    def matcher(self) -> Matcher:
        return Matcher.compile(self.search, self.regex)


@dataclass
class Settings:
    jobs: List[JobSpec] = field(default_factory=list)
    telegram_token: Optional[str] = None
    virustotal_token: Optional[str] = None

    def telegram_token_for(self, job: JobSpec) -> Optional[str]:
        return job.telegram_token or self.telegram_token

    def virustotal_token_for(self, job: JobSpec) -> Optional[str]:
        return job.virustotal_token or self.virustotal_token


def _as_list(value: Any) -> Optional[List[str]]:
    if value is None:
        return None
    if isinstance(value, str):
        return [value]
    if isinstance(value, list):
        return [str(v) for v in value]
    raise ConfigError(f"expected a string or a list, got {type(value).__name__}")


def _opt_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    return str(value)


def _flag(i: int, item: Dict[str, Any], key: str, default: bool) -> bool:
    value = item.get(key, default)
    if not isinstance(value, bool):
        raise ConfigError(f"Job #{i}: '{key}' must be true or false")
    return value


def job_from_mapping(i: int, item: Any) -> JobSpec:
    if not isinstance(item, dict):
        raise ConfigError(f"Job #{i}: expected a mapping")
    unknown = sorted(set(item) - JOB_KEYS)
    if unknown:
        raise ConfigError(f"Job #{i}: unknown key(s): {', '.join(unknown)}")
    try:
        to = _as_list(item.get("to")) or []
        hashes = _as_list(item.get("hash"))
    except ConfigError as e:
        raise ConfigError(f"Job #{i}: {e}") from e
    path = item.get("path")
    return JobSpec(
        to=to,
        path=str(path) if path is not None else None,
        hashes=hashes,
        search=_opt_str(item.get("search")),
        regex=_opt_str(item.get("regex")),
        recursive=_flag(i, item, "recursive", False),
        read_existing=_flag(i, item, "read_existing", True),
        telegram_token=_opt_str(item.get("telegram_token")),
        virustotal_token=_opt_str(item.get("virustotal_token")),
    )


def validate_job(i: int, job: JobSpec, settings: Settings) -> None:
    if job.path is None and job.hashes is None:
        raise ConfigError(f"Job #{i}: specify 'path' or 'hash'.")
    if job.path is not None and job.hashes is not None:
        raise ConfigError(f"Job #{i}: 'path' and 'hash' are mutually exclusive.")
    if not job.to:
        raise ConfigError(f"Job #{i}: specify at least one recipient ('to').")
    if job.path is not None:
        if not job.path.strip():
            raise ConfigError(f"Job #{i}: 'path' is empty.")
        try:
            job.matcher()
        except ConfigError as e:
            raise ConfigError(f"Job #{i}: {e}") from e
        return
    if not job.hashes or any(not h.strip() for h in job.hashes):
        raise ConfigError(f"Job #{i}: 'hash' must be a non-empty list of hashes.")
    if job.search is not None or job.regex is not None:
        raise ConfigError(f"Job #{i}: 'search'/'regex' do not apply to 'hash' jobs.")
    if not settings.virustotal_token_for(job):
        raise ConfigError(f"Job #{i}: 'hash' jobs need a VirusTotal API key.")


def validate(settings: Settings) -> Settings:
    if not settings.jobs:
        raise ConfigError("no jobs configured.")
    for i, job in enumerate(settings.jobs):
        validate_job(i, job, settings)
    return settings


def parse_config(
    data: Any,
    telegram_token: Optional[str] = None,
    virustotal_token: Optional[str] = None,
) -> Settings:
    """Build and validate settings from a parsed YAML document.

    The given tokens fill in for global keys the document leaves out.
    """
    if not isinstance(data, dict):
        raise ConfigError("configuration must be a YAML mapping with a 'jobs' list.")
    items = data.get("jobs") or []
    if not isinstance(items, list) or not items:
        raise ConfigError("YAML file contains no jobs.")
    settings = Settings(
        jobs=[job_from_mapping(i, item) for i, item in enumerate(items)],
        telegram_token=_opt_str(data.get("telegram_token")) or telegram_token,
        virustotal_token=_opt_str(data.get("virustotal_token")) or virustotal_token,
    )
    return validate(settings)


def load_config(
    path: Path,
    telegram_token: Optional[str] = None,
    virustotal_token: Optional[str] = None,
) -> Settings:
    path = Path(path)
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigError(f"reading config file {path}: {e}") from e
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise ConfigError(f"parsing YAML configuration {path}: {e}") from e
    return parse_config(data, telegram_token=telegram_token, virustotal_token=virustotal_token)


def single_job(
    to: List[str],
    path: Optional[str] = None,
    hashes: Optional[List[str]] = None,
    search: Optional[str] = None,
    regex: Optional[str] = None,
    recursive: bool = False,
    read_existing: bool = True,
    telegram_token: Optional[str] = None,
    virustotal_token: Optional[str] = None,
) -> Settings:
    """Build settings for one job given on the command line.

    Recipients may be repeated or comma separated.
    """
    recipients = [r.strip() for item in (to or []) for r in item.split(",") if r.strip()]
    job = JobSpec(
        to=recipients,
        path=path,
        hashes=list(hashes) if hashes else None,
        search=search,
        regex=regex,
        recursive=recursive,
        read_existing=read_existing,
    )
    settings = Settings(jobs=[job], telegram_token=telegram_token, virustotal_token=virustotal_token)
    return validate(settings)
