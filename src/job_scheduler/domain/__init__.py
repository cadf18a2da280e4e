from .job import JobRecord, JobKind, JobStatus, Clock, utc_now, to_utc

__all__ = ["JobRecord", "JobKind", "JobStatus", "Clock", "utc_now", "to_utc"]
