"""
UK Companies House connector (UK entities only)

Finds the best search hit and reads the parent company and listed
subsidiaries from its company profile.
"""

from typing import List, Optional

from connectors.base import BaseConnector, MalformedResponseError
from ownership import EdgeSource, OwnershipEdge, RelationshipType

API_BASE_URL = "https://api.company-information.service.gov.uk"
MAX_SUBSIDIARIES = 5


class CompaniesHouseConnector(BaseConnector):

    name = "companies_house"
    source = EdgeSource.COMPANIES_HOUSE
    countries = frozenset({'UK', 'GB', 'GBR', 'UNITED KINGDOM', 'GREAT BRITAIN'})

    def _auth(self):
        # API key is sent as the basic-auth user name with an empty password
        return (self.config.api_key or 'anonymous', '')

    def _fetch(self, name: str, country_hint: Optional[str]) -> List[OwnershipEdge]:
        search = self._get_json(f"{API_BASE_URL}/search/companies",
                                params={'q': name, 'items_per_page': 1}, auth=self._auth())
        if not isinstance(search, dict):
            raise MalformedResponseError("Search response is not an object")
        items = search.get('items') or []
        if not items:
            return []

        company_number = items[0]['company_number']
        profile = self._get_json(f"{API_BASE_URL}/company/{company_number}", auth=self._auth())
        if not isinstance(profile, dict):
            raise MalformedResponseError("Company profile is not an object")

        evidence = [f"Companies House record {company_number}"]
        edges = []
        parent = profile.get('parent_company_name')
        if parent:
            edges.append(self.edge(parent, name, evidence))
        for subsidiary in (profile.get('subsidiaries') or [])[:MAX_SUBSIDIARIES]:
            sub_name = subsidiary.get('name') if isinstance(subsidiary, dict) else subsidiary
            if sub_name:
                edges.append(self.edge(name, sub_name, evidence, RelationshipType.SUBSIDIARY))
        return edges
