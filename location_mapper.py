"""
Local Sentiment Mapper
======================
Detects Cameroonian towns and regions mentioned in public content and rolls
sentiment logs up into per-city daily snapshots.

Detection order:
- Exact town keyword            (confidence 0.9)
- Alternative town name          (confidence 0.8)
- Region-only keyword            (confidence 0.6)
- Nothing found -> 'Unknown'     (confidence 0.1)
"""

import json
import logging
from collections import Counter
from dataclasses import dataclass, asdict, field
from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple

logger = logging.getLogger("camerpulse.location")


@dataclass(frozen=True)
class LocationInfo:
    city_town: str
    region: str
    division: str
    subdivision: str
    latitude: float
    longitude: float
    alternative_names: Tuple[str, ...] = ()


@dataclass
class LocationMatch:
    region: str
    city: str
    division: Optional[str] = None
    subdivision: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    confidence: float = 0.1

    def to_dict(self) -> Dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v is not None}


def _town(city, region, division, subdivision, lat, lng, *alt) -> LocationInfo:
    return LocationInfo(city, region, division, subdivision, lat, lng, tuple(alt))


# ═══════════════════════════════════════════════════════════════════════════════
# LOCATION DATABASE
# ═══════════════════════════════════════════════════════════════════════════════

_YAOUNDE = _town('Yaoundé', 'Centre', 'Mfoundi', 'Yaoundé I', 3.848, 11.502, 'political capital')
_DOUALA = _town('Douala', 'Littoral', 'Wouri', 'Douala I', 4.048, 9.754, 'economic capital')
_EDEA = _town('Edéa', 'Littoral', 'Sanaga-Maritime', 'Edéa', 3.8, 10.13)
_BAMENDA = _town('Bamenda', 'Northwest', 'Mezam', 'Bamenda I', 5.96, 10.15)
_LIMBE = _town('Limbe', 'Southwest', 'Fako', 'Limbe I', 4.02, 9.2)
_KOUSSERI = _town('Kousséri', 'Far North', 'Logone-et-Chari', 'Kousséri', 12.08, 15.03)
_TCHOLLIRE = _town('Tcholliré', 'North', 'Mayo-Rey', 'Tcholliré', 8.38, 14.17)
_NGAOUNDERE = _town('Ngaoundéré', 'Adamawa', 'Vina', 'Ngaoundéré I', 7.32, 13.58)
_BELABO = _town('Bélabo', 'East', 'Lom-et-Djérem', 'Bélabo', 4.93, 13.3)
_SANGMELIMA = _town('Sangmélima', 'South', 'Dja-et-Lobo', 'Sangmélima', 2.93, 11.98)

LOCATION_DATABASE: Dict[str, LocationInfo] = {
    # Centre
    'yaoundé': _YAOUNDE,
    'yaounde': _YAOUNDE,
    'yde': _YAOUNDE,
    'bafia': _town('Bafia', 'Centre', 'Mbam-et-Inoubou', 'Bafia', 4.75, 11.23),
    'nanga-eboko': _town('Nanga-Eboko', 'Centre', 'Haute-Sanaga', 'Nanga-Eboko', 4.69, 12.37, 'nanga eboko'),
    # Littoral
    'douala': _DOUALA,
    'dla': _DOUALA,
    'edéa': _EDEA,
    'edea': _EDEA,
    'nkongsamba': _town('Nkongsamba', 'Littoral', 'Mungo', 'Nkongsamba', 4.95, 9.94),
    # Northwest
    'bamenda': _BAMENDA,
    'abakwa': _BAMENDA,
    'mankon': _BAMENDA,
    'kumbo': _town('Kumbo', 'Northwest', 'Bui', 'Kumbo', 6.2, 10.67),
    'nkambe': _town('Nkambe', 'Northwest', 'Donga-Mantung', 'Nkambe', 6.58, 10.77),
    'mbengwi': _town('Mbengwi', 'Northwest', 'Momo', 'Mbengwi', 6.17, 9.68),
    'wum': _town('Wum', 'Northwest', 'Menchum', 'Wum', 6.38, 10.07),
    'fundong': _town('Fundong', 'Northwest', 'Boyo', 'Fundong', 6.22, 10.3),
    # Southwest
    'buea': _town('Buea', 'Southwest', 'Fako', 'Buea', 4.15, 9.24, 'buea town'),
    'limbe': _LIMBE,
    'victoria': _LIMBE,
    'kumba': _town('Kumba', 'Southwest', 'Meme', 'Kumba I', 4.63, 9.45),
    'mamfe': _town('Mamfe', 'Southwest', 'Manyu', 'Mamfe Central', 5.75, 9.3),
    'mundemba': _town('Mundemba', 'Southwest', 'Ndian', 'Mundemba', 4.57, 8.87),
    'tiko': _town('Tiko', 'Southwest', 'Fako', 'Tiko', 4.08, 9.36),
    # Far North
    'maroua': _town('Maroua', 'Far North', 'Diamaré', 'Maroua I', 10.6, 14.32),
    'yagoua': _town('Yagoua', 'Far North', 'Mayo-Danay', 'Yagoua', 10.33, 15.23),
    'kousséri': _KOUSSERI,
    'kousseri': _KOUSSERI,
    'mora': _town('Mora', 'Far North', 'Mayo-Sava', 'Mora', 11.05, 14.13),
    # North
    'garoua': _town('Garoua', 'North', 'Bénoué', 'Garoua I', 9.3, 13.4),
    'poli': _town('Poli', 'North', 'Faro', 'Poli', 8.42, 13.25),
    'tcholliré': _TCHOLLIRE,
    'tchollire': _TCHOLLIRE,
    # Adamawa
    'ngaoundéré': _NGAOUNDERE,
    'ngaoundere': _NGAOUNDERE,
    'meiganga': _town('Meiganga', 'Adamawa', 'Mbéré', 'Meiganga', 6.52, 14.3),
    'tibati': _town('Tibati', 'Adamawa', 'Djérem', 'Tibati', 6.47, 12.63),
    # East
    'bertoua': _town('Bertoua', 'East', 'Lom-et-Djérem', 'Bertoua I', 4.58, 13.68),
    'batouri': _town('Batouri', 'East', 'Kadey', 'Batouri', 4.43, 14.37),
    'bélabo': _BELABO,
    'belabo': _BELABO,
    # South
    'ebolowa': _town('Ebolowa', 'South', 'Mvila', 'Ebolowa I', 2.92, 11.15),
    'sangmélima': _SANGMELIMA,
    'sangmelima': _SANGMELIMA,
    'kribi': _town('Kribi', 'South', 'Océan', 'Kribi', 2.95, 9.91),
    # West
    'bafoussam': _town('Bafoussam', 'West', 'Mifi', 'Bafoussam I', 5.48, 10.42),
    'mbouda': _town('Mbouda', 'West', 'Bamboutos', 'Mbouda', 5.62, 10.25),
    'bafang': _town('Bafang', 'West', 'Haut-Nkam', 'Bafang', 5.15, 10.18),
    'foumban': _town('Foumban', 'West', 'Noun', 'Foumban', 5.72, 10.9),
    'dschang': _town('Dschang', 'West', 'Menoua', 'Dschang', 5.45, 10.05),
}

# Ordered: 'far north' must be tried before 'north'
REGION_PATTERNS: List[Tuple[str, List[str]]] = [
    ('Far North', ['far north', 'extreme-nord', 'extrême-nord']),
    ('Northwest', ['northwest', 'north west', 'nord-ouest', 'nw']),
    ('Southwest', ['southwest', 'south west', 'sud-ouest', 'sw']),
    ('Centre', ['centre', 'central']),
    ('Littoral', ['littoral', 'coastal']),
    ('Adamawa', ['adamawa', 'adamaoua']),
    ('North', ['north', 'nord']),
    ('East', ['east']),
    ('South', ['south', 'sud']),
    ('West', ['west', 'ouest']),
]

CAMEROON_REGIONS = [
    'Centre', 'Littoral', 'Southwest', 'Northwest', 'West',
    'East', 'Adamawa', 'North', 'Far North', 'South'
]


def _contains_word(text: str, keyword: str) -> bool:
    """Whole-word containment so that 'wum' does not fire inside 'wumbo'."""
    start = text.find(keyword)
    while start != -1:
        end = start + len(keyword)
        before = text[start - 1] if start > 0 else ' '
        after = text[end] if end < len(text) else ' '
        if not before.isalnum() and not after.isalnum():
            return True
        start = text.find(keyword, start + 1)
    return False


def _match(location: LocationInfo, confidence: float) -> LocationMatch:
    return LocationMatch(
        region=location.region,
        city=location.city_town,
        division=location.division,
        subdivision=location.subdivision,
        latitude=location.latitude,
        longitude=location.longitude,
        confidence=confidence,
    )


def detect_location(content: str) -> LocationMatch:
    """Find the most specific Cameroonian location mentioned in content."""
    text = (content or '').lower()

    for keyword, location in LOCATION_DATABASE.items():
        if _contains_word(text, keyword):
            return _match(location, 0.9)

    for location in LOCATION_DATABASE.values():
        for alt_name in location.alternative_names:
            if _contains_word(text, alt_name.lower()):
                return _match(location, 0.8)

    for region, keywords in REGION_PATTERNS:
        if any(_contains_word(text, kw) for kw in keywords):
            return LocationMatch(region=region, city='Unknown', confidence=0.6)

    return LocationMatch(region='Unknown', city='Unknown', confidence=0.1)


def enhance_location(content_data: Dict[str, Any]) -> Dict[str, Any]:
    """Return a copy of content_data with detected location fields attached."""
    location = detect_location(content_data.get('content') or content_data.get('content_text') or '')
    enhanced = dict(content_data)
    enhanced['region_detected'] = location.region
    enhanced['city_detected'] = location.city if location.city != 'Unknown' else None
    enhanced['subdivision_detected'] = location.subdivision
    enhanced['coordinates'] = None
    if location.region != 'Unknown':
        enhanced['coordinates'] = {
            'latitude': location.latitude,
            'longitude': location.longitude,
            'detection_confidence': location.confidence,
            'method': 'content_analysis',
        }
    return enhanced


# ═══════════════════════════════════════════════════════════════════════════════
# CITY AGGREGATION
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass
class _CityBucket:
    region: str
    city_town: str
    subdivision: Optional[str]
    sentiments: List[float] = field(default_factory=list)
    emotions: Counter = field(default_factory=Counter)
    concerns: Counter = field(default_factory=Counter)
    hashtags: Counter = field(default_factory=Counter)
    threat_indicators: int = 0

    @property
    def volume(self) -> int:
        return len(self.sentiments)


def _top(counter: Counter, n: int) -> List[str]:
    return [item for item, _ in counter.most_common(n)]


def _threat_level(threats: int, volume: int) -> str:
    if threats > volume * 0.3:
        return 'high'
    if threats > volume * 0.15:
        return 'medium'
    return 'low'


def _city_reference(city: str, region: str) -> Optional[LocationInfo]:
    for location in LOCATION_DATABASE.values():
        if location.city_town == city and location.region == region:
            return location
    return None


def aggregate_local_sentiment(
    logs: List[Dict[str, Any]],
    locations: Optional[Dict[Tuple[str, str], Dict[str, Any]]] = None,
    today: Optional[date] = None
) -> List[Dict[str, Any]]:
    """
    Group sentiment logs by (city, region) into daily local sentiment entries.

    Args:
        logs: Sentiment log rows carrying city_detected and region_detected
        locations: Optional cameroon_locations rows keyed by (city, region)
        today: Date stamped on the entries (defaults to UTC today)
    """
    locations = locations or {}
    today = today or datetime.now(timezone.utc).date()
    buckets: Dict[Tuple[str, str], _CityBucket] = {}

    for log in logs:
        city = log.get('city_detected')
        if not city:
            continue
        key = (city, log.get('region_detected'))
        bucket = buckets.get(key)
        if bucket is None:
            bucket = _CityBucket(
                region=log.get('region_detected'),
                city_town=city,
                subdivision=log.get('subdivision_detected'),
            )
            buckets[key] = bucket

        bucket.sentiments.append(float(log.get('sentiment_score') or 0))
        bucket.emotions.update(log.get('emotional_tone') or [])
        bucket.concerns.update(log.get('keywords_detected') or [])
        bucket.hashtags.update(log.get('hashtags') or [])
        threat = log.get('threat_level')
        if threat and threat != 'none':
            bucket.threat_indicators += 1

    entries = []
    for key, bucket in buckets.items():
        avg = sum(bucket.sentiments) / bucket.volume
        info = locations.get(key) or {}
        reference = _city_reference(bucket.city_town, bucket.region)

        entries.append({
            'region': bucket.region,
            'division': info.get('division') or (reference.division if reference else None),
            'subdivision': bucket.subdivision or info.get('subdivision'),
            'city_town': bucket.city_town,
            'overall_sentiment': avg,
            'sentiment_breakdown': {
                'positive': sum(1 for s in bucket.sentiments if s > 0.1),
                'negative': sum(1 for s in bucket.sentiments if s < -0.1),
                'neutral': sum(1 for s in bucket.sentiments if -0.1 <= s <= 0.1),
                'avg_score': avg,
            },
            'dominant_emotions': _top(bucket.emotions, 5),
            'top_concerns': _top(bucket.concerns, 3),
            'trending_hashtags': _top(bucket.hashtags, 5),
            'content_volume': bucket.volume,
            'threat_level': _threat_level(bucket.threat_indicators, bucket.volume),
            'population_estimate': info.get('population'),
            'is_major_city': bool(info.get('is_major_city', False)),
            'urban_rural': info.get('urban_rural') or 'urban',
            'latitude': info.get('latitude') or (reference.latitude if reference else None),
            'longitude': info.get('longitude') or (reference.longitude if reference else None),
            'date_recorded': today.isoformat(),
        })

    return entries


async def generate_local_sentiment(pool) -> Dict[str, Any]:
    """Aggregate the last 7 days of located sentiment logs and upsert them."""
    since = datetime.now(timezone.utc) - timedelta(days=7)

    async with pool.acquire() as conn:
        logs = await conn.fetch("""
            SELECT city_detected, region_detected, subdivision_detected, sentiment_score,
                   emotional_tone, keywords_detected, hashtags, threat_level
            FROM camerpulse_intelligence_sentiment_logs
            WHERE city_detected IS NOT NULL AND created_at >= $1
        """, since)

        if not logs:
            logger.info("No sentiment logs with city data found")
            return {"success": True, "message": "No data to aggregate", "cities_processed": 0}

        logs = [dict(r) for r in logs]
        location_rows = await conn.fetch("""
            SELECT city_town, region, division, subdivision, population,
                   is_major_city, urban_rural, latitude, longitude
            FROM cameroon_locations
        """)
        locations = {(r['city_town'], r['region']): dict(r) for r in location_rows}

        entries = aggregate_local_sentiment(logs, locations)

        async with conn.transaction():
            for e in entries:
                await conn.execute("""
                    INSERT INTO camerpulse_intelligence_local_sentiment
                    (region, division, subdivision, city_town, overall_sentiment, sentiment_breakdown,
                     dominant_emotions, top_concerns, trending_hashtags, content_volume, threat_level,
                     population_estimate, is_major_city, urban_rural, latitude, longitude, date_recorded)
                    VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14, $15, $16, $17)
                    ON CONFLICT (city_town, region, date_recorded) DO UPDATE SET
                        overall_sentiment = EXCLUDED.overall_sentiment,
                        sentiment_breakdown = EXCLUDED.sentiment_breakdown,
                        dominant_emotions = EXCLUDED.dominant_emotions,
                        top_concerns = EXCLUDED.top_concerns,
                        trending_hashtags = EXCLUDED.trending_hashtags,
                        content_volume = EXCLUDED.content_volume,
                        threat_level = EXCLUDED.threat_level
                """, e['region'], e['division'], e['subdivision'], e['city_town'],
                   e['overall_sentiment'], json.dumps(e['sentiment_breakdown']),
                   e['dominant_emotions'], e['top_concerns'], e['trending_hashtags'],
                   e['content_volume'], e['threat_level'], e['population_estimate'],
                   e['is_major_city'], e['urban_rural'], e['latitude'], e['longitude'],
                   date.fromisoformat(e['date_recorded']))

    logger.info(f"Generated local sentiment data for {len(entries)} cities")
    return {
        "success": True,
        "message": f"Generated local sentiment data for {len(entries)} cities",
        "cities_processed": len(entries),
        "total_logs_analyzed": len(logs),
    }
