"""
OpenCorporates connector (requires an API token)

Corporate officers of the top search hits (companies acting as directors
or shareholders) are taken as candidate parents.
"""

import re
from typing import List, Optional

from connectors.base import BaseConnector, MalformedResponseError
from ownership import EdgeSource, OwnershipEdge

API_BASE_URL = "https://api.opencorporates.com/v0.4"
MAX_COMPANIES = 3

CORPORATE_KEYWORDS = frozenset({
    'ltd', 'limited', 'inc', 'incorporated', 'corp', 'corporation',
    'llc', 'sa', 'gmbh', 'ag', 'co', 'holdings', 'group',
})


def is_corporate_officer(officer_name: str) -> bool:
    """Officer looks like a company rather than a person"""
    tokens = re.split(r'[^\w]+', officer_name.lower())
    return any(token in CORPORATE_KEYWORDS for token in tokens)


class OpenCorporatesConnector(BaseConnector):

    name = "opencorporates"
    source = EdgeSource.OPENCORPORATES
    requires_api_key = True

    def _fetch(self, name: str, country_hint: Optional[str]) -> List[OwnershipEdge]:
        token = {'api_token': self.config.api_key}
        search = self._get_json(f"{API_BASE_URL}/companies/search", params=dict(q=name, **token))
        if not isinstance(search, dict):
            raise MalformedResponseError("Search response is not an object")

        edges = []
        companies = search.get('results', {}).get('companies', [])
        for item in companies[:MAX_COMPANIES]:
            company = item['company']
            jurisdiction = company['jurisdiction_code']
            number = company['company_number']
            officers = self._get_json(
                f"{API_BASE_URL}/companies/{jurisdiction}/{number}/officers", params=token
            ).get('results', {}).get('officers', [])

            for entry in officers:
                officer = entry['officer']
                if not is_corporate_officer(officer.get('name', '')):
                    continue
                edges.append(self.edge(officer['name'], name, [
                    f"{officer['name']} listed as {officer.get('position', 'officer')} of {name}",
                    f"Source: OpenCorporates {jurisdiction}/{number}",
                ]))
        return edges
