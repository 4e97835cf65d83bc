"""
Wikipedia infobox connector

Takes the top search hit, fetches its wikitext and reads the infobox
`parent` and `subsidiaries` fields.
"""

import re
from typing import Any, Dict, List, Optional

from connectors.base import BaseConnector, MalformedResponseError
from ownership import EdgeSource, OwnershipEdge, RelationshipType

API_URL = "https://en.wikipedia.org/w/api.php"
MAX_SUBSIDIARIES = 5

PARENT_PATTERN = re.compile(r'\|\s*parent\s*=\s*\[\[([^\]]+)\]\]', re.IGNORECASE)
SUBSIDIARIES_PATTERN = re.compile(r'\|\s*subsid(?:iaries)?\s*=\s*([^\n]+)', re.IGNORECASE)
LINK_PATTERN = re.compile(r'\[\[([^\]]+)\]\]')


def link_target(link: str) -> str:
    """[[Target|Label]] -> Target"""
    return link.split('|')[0].strip()


def parse_infobox(wikitext: str) -> Dict[str, Any]:
    """Parent and subsidiary link targets from infobox wikitext"""
    result: Dict[str, Any] = {'parent': None, 'subsidiaries': []}
    parent_match = PARENT_PATTERN.search(wikitext)
    if parent_match:
        result['parent'] = link_target(parent_match.group(1))
    subs_match = SUBSIDIARIES_PATTERN.search(wikitext)
    if subs_match:
        result['subsidiaries'] = [link_target(link) for link in LINK_PATTERN.findall(subs_match.group(1))]
    return result


def _revision_text(page: Dict[str, Any]) -> str:
    revisions = page.get('revisions') or []
    if not revisions:
        return ''
    revision = revisions[0]
    if '*' in revision:
        return revision['*']
    return revision.get('slots', {}).get('main', {}).get('*', '')


class WikipediaConnector(BaseConnector):

    name = "wikipedia"
    source = EdgeSource.WIKIPEDIA

    def _fetch(self, name: str, country_hint: Optional[str]) -> List[OwnershipEdge]:
        search = self._get_json(API_URL, params={
            'action': 'query', 'list': 'search', 'srsearch': name,
            'srlimit': 1, 'format': 'json',
        })
        if not isinstance(search, dict):
            raise MalformedResponseError("Search response is not an object")
        hits = search.get('query', {}).get('search', [])
        if not hits:
            return []
        title = hits[0]['title']

        content = self._get_json(API_URL, params={
            'action': 'query', 'titles': title, 'prop': 'revisions',
            'rvprop': 'content', 'rvslots': 'main', 'format': 'json',
        })
        pages = content.get('query', {}).get('pages', {})
        if not pages:
            return []
        wikitext = _revision_text(next(iter(pages.values())))

        infobox = parse_infobox(wikitext)
        evidence = [f"Wikipedia infobox: {title}"]
        edges = []
        if infobox['parent']:
            edges.append(self.edge(infobox['parent'], name, evidence))
        for subsidiary in infobox['subsidiaries'][:MAX_SUBSIDIARIES]:
            edges.append(self.edge(name, subsidiary, evidence, RelationshipType.SUBSIDIARY))
        return edges
