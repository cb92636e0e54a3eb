"""Caller identity passed along with every RPC request."""
from typing import Optional, List
from pydantic import BaseModel

from .fhir import Reference


class ClientContext(BaseModel):
    """Requesting client: the legal entity acting, its type and the employee."""

    client_id: str
    client_type: str
    employee_id: Optional[str] = None

    def grantees(self) -> List[Reference]:
        """References an approval may be granted to for this caller."""
        refs = [Reference(type="legal_entity", id=self.client_id)]
        if self.employee_id:
            refs.append(Reference(type="employee", id=self.employee_id))
        return refs
