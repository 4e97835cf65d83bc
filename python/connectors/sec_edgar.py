"""
SEC EDGAR connector (US entities only)

Resolves the company's CIK from the EDGAR company-search Atom feed, then
reads the registrant record from data.sec.gov. A registrant filing under a
different current name than the one queried is recorded as the parent.
"""

import re
from typing import List, Optional

from connectors.base import BaseConnector, MalformedResponseError
from ownership import EdgeSource, OwnershipEdge
from xml_utils import secure_parse_bytes

SEARCH_URL = "https://www.sec.gov/cgi-bin/browse-edgar"
SUBMISSIONS_URL = "https://data.sec.gov/submissions/CIK{cik}.json"

CIK_PATTERN = re.compile(r'CIK=(\d+)')


def extract_cik(root) -> Optional[str]:
    """CIK from an EDGAR Atom feed, zero-padded to 10 digits"""
    for elem in root.iter():
        if not isinstance(elem.tag, str):
            continue
        local = elem.tag.rsplit('}', 1)[-1]
        if local == 'cik' and elem.text and elem.text.strip().isdigit():
            return elem.text.strip().zfill(10)
        href = elem.get('href')
        if href:
            match = CIK_PATTERN.search(href)
            if match:
                return match.group(1).zfill(10)
    return None


class SecEdgarConnector(BaseConnector):

    name = "sec_edgar"
    source = EdgeSource.SEC_EDGAR
    countries = frozenset({'US', 'USA', 'UNITED STATES', 'UNITED STATES OF AMERICA'})

    def _fetch(self, name: str, country_hint: Optional[str]) -> List[OwnershipEdge]:
        response = self._get(SEARCH_URL, params={
            'company': name,
            'owner': 'exclude',
            'action': 'getcompany',
            'count': 1,
            'output': 'atom',
        }, headers={'Accept': 'application/atom+xml'})
        try:
            root = secure_parse_bytes(response.content)
        except ValueError as e:
            raise MalformedResponseError(str(e)) from e

        cik = extract_cik(root)
        if not cik:
            return []

        registrant = self._get_json(SUBMISSIONS_URL.format(cik=cik))
        if not isinstance(registrant, dict):
            raise MalformedResponseError("Submissions payload is not an object")

        registered_name = registrant.get('name')
        if registered_name and registrant.get('formerNames'):
            return [self.edge(registered_name, name, [f"SEC filing CIK: {cik}"])]
        return []
