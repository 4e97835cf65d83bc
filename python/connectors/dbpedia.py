"""
DBpedia SPARQL connector (dbo:parentCompany / dbo:subsidiary)
"""

import re
from typing import List, Optional
from urllib.parse import unquote

from connectors.base import BaseConnector, MalformedResponseError
from connectors.wikidata import escape_sparql_literal
from ownership import EdgeSource, OwnershipEdge, RelationshipType

SPARQL_ENDPOINT = "https://dbpedia.org/sparql"

OWNERSHIP_QUERY = """
SELECT ?company ?parent ?subsidiary WHERE {
  {
    ?company rdfs:label "%(name)s"@en .
    ?company dbo:parentCompany ?parent .
  } UNION {
    ?company rdfs:label "%(name)s"@en .
    ?company dbo:subsidiary ?subsidiary .
  }
}
LIMIT 10
"""

RESOURCE_PATTERN = re.compile(r'resource/(.+)$')


def resource_name(uri: str) -> Optional[str]:
    """http://dbpedia.org/resource/ZTE_USA -> 'ZTE USA'"""
    match = RESOURCE_PATTERN.search(uri or '')
    if not match:
        return None
    return unquote(match.group(1).replace('_', ' ')).strip() or None


class DBpediaConnector(BaseConnector):

    name = "dbpedia"
    source = EdgeSource.DBPEDIA

    def _fetch(self, name: str, country_hint: Optional[str]) -> List[OwnershipEdge]:
        data = self._get_json(
            SPARQL_ENDPOINT,
            params={'query': OWNERSHIP_QUERY % {'name': escape_sparql_literal(name)}, 'format': 'json'},
            headers={'Accept': 'application/sparql-results+json'},
        )
        if not isinstance(data, dict) or 'results' not in data:
            raise MalformedResponseError("SPARQL response has no results section")

        evidence = ["DBpedia knowledge base"]
        edges = []
        for binding in data['results'].get('bindings', []):
            if 'parent' in binding:
                parent = resource_name(binding['parent']['value'])
                if parent:
                    edges.append(self.edge(parent, name, evidence))
            if 'subsidiary' in binding:
                subsidiary = resource_name(binding['subsidiary']['value'])
                if subsidiary:
                    edges.append(self.edge(name, subsidiary, evidence, RelationshipType.SUBSIDIARY))
        return edges
