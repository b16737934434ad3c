"""
Senate directory import.

Scrapes the Senate website for senators, falls back to a built-in roster when
the site is unreachable or yields nothing, and upserts the result into the
politicians table.
"""

import logging
import os
import re
from dataclasses import dataclass
from datetime import date
from typing import Any, Dict, List, Optional

import asyncpg
import httpx
from bs4 import BeautifulSoup

from civic_store import sanitize_error

logger = logging.getLogger("camerpulse.senate")

SENATE_SOURCE_URL = os.getenv("SENATE_SOURCE_URL", "https://www.senat.cm/?page_id=2339")

BROWSER_USER_AGENT = 'Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36'
SENATOR_PATTERN = re.compile(r'(?:Senator|Sénateur)[ \t]+([^,\n]+)', re.IGNORECASE)
CARD_CLASS = re.compile(r'senat', re.IGNORECASE)
CARD_TAGS = ['div', 'li', 'article', 'section', 'tr']
DEFAULT_CIVIC_SCORE = 70

TABLE_COLUMNS = {
    'name': 'name', 'nom': 'name',
    'party': 'party', 'parti': 'party',
    'region': 'region', 'région': 'region',
    'constituency': 'constituency', 'circonscription': 'constituency', 'department': 'constituency',
    'département': 'constituency',
}


@dataclass
class SenatorData:
    name: str
    role_title: str = "Senator"
    level_of_office: str = "National"
    party: Optional[str] = None
    region: Optional[str] = None
    constituency: Optional[str] = None
    photo_url: Optional[str] = None
    gender: Optional[str] = None
    term_start_date: Optional[date] = None

    def summary(self) -> Dict[str, Any]:
        return {'name': self.name, 'role_title': self.role_title, 'region': self.region, 'party': self.party}


def _text(node) -> Optional[str]:
    if node is None:
        return None
    value = ' '.join(node.get_text(' ', strip=True).split())
    return value or None


def _clean_name(raw: str) -> str:
    return ' '.join(raw.strip(' .;:-').split())


def _parse_cards(soup) -> List[SenatorData]:
    senators = []
    for card in soup.find_all(CARD_TAGS, class_=CARD_CLASS):
        # list wrappers such as "senators-list" hold cards of their own
        if card.find(CARD_TAGS, class_=CARD_CLASS):
            continue
        name = _text(card.find(class_='name')) or _text(card.find(['h2', 'h3', 'h4']))
        if not name:
            continue
        img = card.find('img')
        senators.append(SenatorData(
            name=_clean_name(name),
            role_title=_text(card.find(class_='role')) or 'Senator',
            party=_text(card.find(class_='party')),
            region=_text(card.find(class_='region')),
            constituency=_text(card.find(class_='constituency')),
            photo_url=img.get('src') if img else None,
        ))
    return senators


def _parse_tables(soup) -> List[SenatorData]:
    senators = []
    for table in soup.find_all('table'):
        headers = [(_text(th) or '').lower() for th in table.find_all('th')]
        columns = {TABLE_COLUMNS[h]: i for i, h in enumerate(headers) if h in TABLE_COLUMNS}
        if 'name' not in columns:
            continue
        for row in table.find_all('tr'):
            cells = row.find_all('td')
            if len(cells) <= columns['name']:
                continue
            values = {field: _text(cells[i]) if i < len(cells) else None for field, i in columns.items()}
            if not values['name']:
                continue
            senators.append(SenatorData(
                name=_clean_name(values['name']),
                party=values.get('party'),
                region=values.get('region'),
                constituency=values.get('constituency'),
            ))
    return senators


def parse_senators(html: str) -> List[SenatorData]:
    soup = BeautifulSoup(html, "html.parser")

    found = _parse_cards(soup) + _parse_tables(soup)
    for match in SENATOR_PATTERN.finditer(soup.get_text('\n')):
        name = _clean_name(match.group(1))
        if 2 < len(name) <= 80:
            found.append(SenatorData(name=name))

    seen = set()
    senators = []
    for senator in found:
        key = senator.name.lower()
        if key not in seen:
            seen.add(key)
            senators.append(senator)
    return senators


async def scrape_senate_website(url: str, client: Optional[httpx.AsyncClient] = None) -> List[SenatorData]:
    """Fetch and parse the senators page. HTTP errors propagate."""
    logger.info(f"Scraping Senate website: {url}")
    if client is None:
        async with httpx.AsyncClient(timeout=60, follow_redirects=True) as own_client:
            response = await own_client.get(url, headers={'User-Agent': BROWSER_USER_AGENT})
    else:
        response = await client.get(url, headers={'User-Agent': BROWSER_USER_AGENT})
    response.raise_for_status()
    return parse_senators(response.text)


def _senator(name, region, constituency, party="CPDM", gender=None, role_title="Senator", term_start_date=None):
    return SenatorData(name=name, role_title=role_title, party=party, region=region,
                       constituency=constituency, gender=gender, term_start_date=term_start_date)


def fallback_senators() -> List[SenatorData]:
    return [
        # Bureau
        _senator("Marcel Niat Njifenji", "Centre", "Mfoundi", gender="Male",
                 role_title="President of the Senate", term_start_date=date(2018, 4, 12)),
        _senator("Ngo Belnoun Mboussi", "Littoral", "Wouri", gender="Male",
                 role_title="First Vice President of the Senate"),
        _senator("Salomon Eheth", "South", "Mvila", gender="Male",
                 role_title="Second Vice President of the Senate"),
        _senator("Ousmanou Abdoullahi", "Far North", "Logone-et-Chari", gender="Male",
                 role_title="Third Vice President of the Senate"),
        _senator("Marie-Claire Okenve", "South", "Dja-et-Lobo", gender="Female",
                 role_title="Secretary of the Senate"),
        # Adamawa
        _senator("Oumarou Djoulde", "Adamawa", "Faro-et-Déo", gender="Male"),
        _senator("Haman Adama", "Adamawa", "Mayo-Banyo", gender="Male"),
        _senator("Aminatou Ahidjo", "Adamawa", "Vina", gender="Female"),
        _senator("Aliou Souley", "Adamawa", "Djérem", gender="Male"),
        _senator("Fadimatou Alim", "Adamawa", "Mbéré", gender="Female"),
        _senator("Bouba Fello", "Adamawa", "Mayo-Banyo", party="UDC", gender="Male"),
        _senator("Rahmato Mahamat", "Adamawa", "Faro-et-Déo", gender="Male"),
        # Centre
        _senator("Pierre Fouda", "Centre", "Lékié", party="UDC", gender="Male",
                 role_title="Traditional Ruler & Senator"),
        _senator("Gabriel Ndongo", "Centre", "Mbam-et-Inoubou", gender="Male"),
        _senator("Christophe Bidzogo", "Centre", "Nyong-et-Mfoumou", gender="Male"),
        _senator("Rose Abena", "Centre", "Mbam-et-Kim", gender="Female"),
        _senator("Paul Biya Jr.", "Centre", "Mfoundi", gender="Male"),
        _senator("Catherine Bakang", "Centre", "Mefou-et-Afamba", gender="Female"),
        _senator("André Marie Nkou", "Centre", "Haute-Sanaga", gender="Male"),
        # East
        _senator("Zacharie Perevet", "East", "Boumba-et-Ngoko", gender="Male"),
        _senator("Pauline Nalova", "East", "Kadey", gender="Female"),
        _senator("Jean Baptiste Bokam", "East", "Lom-et-Djérem", gender="Male"),
        _senator("Marie Antoinette Koa", "East", "Haut-Nyong", gender="Female"),
        _senator("Emmanuel Bizot", "East", "Mbéré", gender="Male"),
        _senator("Georgette Kalla", "East", "Kadey", gender="Female"),
        _senator("Louis Peya", "East", "Lom-et-Djérem", party="UDC", gender="Male"),
        # Far North
        _senator("Alim Hayatou", "Far North", "Diamaré", gender="Male"),
        _senator("Khadidja Mata", "Far North", "Mayo-Sava", gender="Female"),
        _senator("Amadou Ali", "Far North", "Mayo-Danay", gender="Male"),
        _senator("Fatimata Alhadji", "Far North", "Logone-et-Chari", gender="Female"),
        _senator("Hamadou Mustafa", "Far North", "Mayo-Kani", gender="Male"),
        _senator("Aissatou Bello", "Far North", "Diamaré", gender="Female"),
        _senator("Mahamat Paba", "Far North", "Mayo-Tsanaga", party="UDC", gender="Male"),
        # Littoral
        _senator("Cavaye Yeguie Djibril", "Littoral", "Wouri", gender="Male"),
        _senator("Isabelle Bisseck", "Littoral", "Sanaga-Maritime", gender="Female"),
        _senator("Jean-Marie Atangana Mebara", "Littoral", "Nkam", gender="Male"),
        _senator("Françoise Mballa", "Littoral", "Moungo", gender="Female"),
        _senator("Robert Nkili", "Littoral", "Wouri", gender="Male"),
        _senator("Grace Ewane", "Littoral", "Wouri", party="SDF", gender="Female"),
        _senator("Pierre Moukoko", "Littoral", "Nkam", party="UDC", gender="Male"),
        # North
        _senator("Sadou Daoudou", "North", "Bénoué", gender="Male"),
        _senator("Halimatou Kakai", "North", "Mayo-Rey", gender="Female"),
        _senator("Boukar Djarma", "North", "Faro", gender="Male"),
        _senator("Aichatou Barka", "North", "Mayo-Louti", gender="Female"),
        _senator("Hamadou Yaya", "North", "Bénoué", gender="Male"),
        _senator("Mariama Mahamad", "North", "Mayo-Rey", party="UDC", gender="Female"),
        _senator("Alhadji Baba", "North", "Faro", gender="Male"),
        # North West
        _senator("Tabetando Tabe", "North West", "Donga-Mantung", gender="Male"),
        _senator("Regina Mundi", "North West", "Mezam", party="SDF", gender="Female"),
        _senator("Simon Achidi Achu", "North West", "Momo", gender="Male"),
        _senator("Dorothy Njeuma", "North West", "Bui", gender="Female"),
        _senator("Victor Mengot", "North West", "Boyo", gender="Male"),
        _senator("Janet Awah", "North West", "Mezam", party="SDF", gender="Female"),
        _senator("Peter Bongua", "North West", "Ngoketunjia", party="UDC", gender="Male"),
        # South
        _senator("Jean Nkuete", "South", "Océan", gender="Male"),
        _senator("Cécile Mangoue", "South", "Mvila", gender="Female"),
        _senator("Ferdinand Oyono", "South", "Ebolowa", gender="Male"),
        _senator("Antoinette Ngo Mayag", "South", "Vallée-du-Ntem", gender="Female"),
        _senator("Pascal Nlend", "South", "Océan", gender="Male"),
        _senator("Thérèse Abena", "South", "Dja-et-Lobo", party="UDC", gender="Female"),
        _senator("Dieudonné Essomba", "South", "Mvila", gender="Male"),
        # South West
        _senator("Mukete Tahnyui", "South West", "Fako", gender="Male"),
        _senator("Magdalene Foubé", "South West", "Meme", party="SDF", gender="Female"),
        _senator("Andrew Motanga", "South West", "Ndian", gender="Male"),
        _senator("Grace Muma", "South West", "Koupé-Manengouba", gender="Female"),
        _senator("Stephen Taku", "South West", "Manyu", gender="Male"),
        _senator("Josephine Leke", "South West", "Fako", party="SDF", gender="Female"),
        _senator("Paul Tasong", "South West", "Lebialem", party="UDC", gender="Male"),
        # West
        _senator("Simon Tchamba", "West", "Ndé", gender="Male"),
        _senator("Célestine Ketcha", "West", "Bamoun", gender="Female"),
        _senator("Jean Bahati", "West", "Haut-Plateau", gender="Male"),
        _senator("Rose Mballa", "West", "Mifi", gender="Female"),
        _senator("Paul Wandji", "West", "Koung-Khi", gender="Male"),
        _senator("Julienne Keutcha", "West", "Ménoua", party="UDC", gender="Female"),
        _senator("François Kamga", "West", "Bamboutos", party="SDF", gender="Male"),
    ]


def match_party(party: Optional[str], parties: List[Dict[str, Any]]) -> Optional[Any]:
    """Id of the party whose name contains `party` or whose acronym equals it."""
    if not party:
        return None
    needle = party.lower()
    for p in parties:
        if needle in (p.get('name') or '').lower() or (p.get('acronym') or '').lower() == needle:
            return p['id']
    return None


async def collect_senators(url: str, client: Optional[httpx.AsyncClient] = None) -> List[SenatorData]:
    try:
        senators = await scrape_senate_website(url, client)
    except httpx.HTTPError as e:
        logger.error(f"Error scraping Senate website: {sanitize_error(e)}")
        senators = []
    if not senators:
        logger.info("Using fallback senator data...")
        senators = fallback_senators()
    return senators


async def import_senators(pool, senators: List[SenatorData], link_parties: bool = True) -> Dict[str, Any]:
    updated = created = failed = 0

    async with pool.acquire() as conn:
        parties = [dict(p) for p in await conn.fetch("SELECT id, name, acronym FROM political_parties")] if link_parties else []

        for senator in senators:
            party_id = match_party(senator.party, parties) if link_parties else None
            try:
                existing_id = await conn.fetchval("""
                    SELECT id FROM politicians
                    WHERE LOWER(name) = LOWER($1) AND role_title ILIKE '%senat%'
                    LIMIT 1
                """, senator.name)

                if existing_id:
                    await conn.execute("""
                        UPDATE politicians SET
                            role_title = $2, party = $3, region = $4, constituency = $5,
                            profile_image_url = $6, gender = $7, term_start_date = $8,
                            level_of_office = $9, political_party_id = $10,
                            verified = true, auto_imported = true, updated_at = NOW()
                        WHERE id = $1
                    """, existing_id, senator.role_title, senator.party, senator.region, senator.constituency,
                        senator.photo_url, senator.gender, senator.term_start_date,
                        senator.level_of_office, party_id)
                    updated += 1
                    logger.info(f"Updated senator: {senator.name}")
                else:
                    await conn.execute("""
                        INSERT INTO politicians
                        (name, role_title, party, region, constituency, profile_image_url, gender,
                         term_start_date, level_of_office, political_party_id, civic_score,
                         verified, auto_imported, is_claimable, is_claimed, claim_status)
                        VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, true, true, true, false, 'unclaimed')
                    """, senator.name, senator.role_title, senator.party or 'Unknown', senator.region or 'Unknown',
                        senator.constituency, senator.photo_url, senator.gender, senator.term_start_date,
                        senator.level_of_office, party_id, DEFAULT_CIVIC_SCORE)
                    created += 1
                    logger.info(f"Created new senator: {senator.name}")

            except (asyncpg.PostgresError, asyncpg.InterfaceError) as e:
                failed += 1
                logger.error(f"Error processing senator {senator.name}: {sanitize_error(e)}")

    logger.info(f"Processing complete. Updated: {updated}, Created: {created}, Failed: {failed}")
    return {
        'success': True,
        'processed': len(senators),
        'updated': updated,
        'created': created,
        'failed': failed,
        'senators': [s.summary() for s in senators],
    }
