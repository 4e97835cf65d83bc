"""
Wikidata SPARQL connector

Looks up the company by its English label and returns its parent
organisations (property P749).
"""

from typing import List, Optional

from connectors.base import BaseConnector, MalformedResponseError
from ownership import EdgeSource, OwnershipEdge

SPARQL_ENDPOINT = "https://query.wikidata.org/sparql"

PARENT_QUERY = """
SELECT ?company ?companyLabel ?parent ?parentLabel WHERE {
  ?company rdfs:label "%s"@en .
  ?company wdt:P31/wdt:P279* wd:Q4830453 .
  OPTIONAL { ?company wdt:P749 ?parent . }
  SERVICE wikibase:label { bd:serviceParam wikibase:language "en". }
}
LIMIT 5
"""


def escape_sparql_literal(value: str) -> str:
    """Escape a value for use inside a double-quoted SPARQL literal"""
    return (value.replace('\\', '\\\\')
                 .replace('"', '\\"')
                 .replace('\n', ' ')
                 .replace('\r', ' '))


class WikidataConnector(BaseConnector):

    name = "wikidata"
    source = EdgeSource.WIKIDATA

    def _fetch(self, name: str, country_hint: Optional[str]) -> List[OwnershipEdge]:
        data = self._get_json(
            SPARQL_ENDPOINT,
            params={'query': PARENT_QUERY % escape_sparql_literal(name), 'format': 'json'},
            headers={'Accept': 'application/sparql-results+json'},
        )
        if not isinstance(data, dict) or 'results' not in data:
            raise MalformedResponseError("SPARQL response has no results section")

        edges = []
        for binding in data['results'].get('bindings', []):
            parent = binding.get('parentLabel', {}).get('value')
            if not parent or 'parent' not in binding:
                continue
            edges.append(self.edge(parent, name, [
                f"Wikidata P749 (parent organization): {binding['parent']['value']}"
            ]))
        return edges
