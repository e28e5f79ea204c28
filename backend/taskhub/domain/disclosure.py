"""Disclosure payloads: the withheld address and contact bundle.

Only the call-center approval and the customer-detail release gate may put one
of these into a provider-facing notification.
"""

from __future__ import annotations

from typing import Any

from taskhub.domain.jobs.db_models import Job
from taskhub.domain.users.db_models import User


def client_contact(client: User) -> dict[str, Any]:
    return {
        "name": client.display_name,
        "phone": client.phone,
        "email": client.email,
        "address": client.address,
    }


def build_disclosure(client: User, job: Job | None = None) -> dict[str, Any]:
    if job is not None:
        task_details = {
            "job_id": job.job_id,
            "title": job.title,
            "description": job.description,
            "location": job.location,
            "latitude": job.latitude,
            "longitude": job.longitude,
            "budget_cents": job.budget_cents,
        }
    else:
        task_details = {
            "location": client.address,
            "latitude": client.latitude,
            "longitude": client.longitude,
        }
    return {
        "has_address": True,
        "client_info": client_contact(client),
        "task_details": task_details,
    }
