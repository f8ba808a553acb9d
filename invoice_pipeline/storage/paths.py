"""Storage key layout for one processing session.

    {env}/{user_id}/{session_id}/originals/{job_id}.pdf
    {env}/{user_id}/{session_id}/pages/{job_id}.pdf
    {env}/{user_id}/{session_id}/processed/{name}
    {env}/{user_id}/{session_id}/bundle.zip
    {env}/{user_id}/{session_id}/report.xlsx
"""


def session_prefix(env: str, user_id: int, session_id: str) -> str:
    return f"{env}/{user_id}/{session_id}"


def original_key(prefix: str, job_id: str) -> str:
    return f"{prefix}/originals/{job_id}.pdf"


def page_key(prefix: str, job_id: str) -> str:
    return f"{prefix}/pages/{job_id}.pdf"


def processed_key(prefix: str, name: str) -> str:
    return f"{prefix}/processed/{name}"


def bundle_key(prefix: str) -> str:
    return f"{prefix}/bundle.zip"


def report_key(prefix: str) -> str:
    return f"{prefix}/report.xlsx"
