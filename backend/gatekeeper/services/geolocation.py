import ipaddress
import logging
from pathlib import Path
from typing import Optional, Dict, Any, List, Tuple

import pandas as pd

logger = logging.getLogger(__name__)

REQUIRED_COLUMNS = ["network", "country", "city", "latitude", "longitude"]


class GeoLocator:
    """
    IP to location lookup backed by a CSV table.

    The table has one row per network (``network,country,city,latitude,longitude``,
    e.g. ``81.2.69.0/24,GB,London,51.5142,-0.0931``). The most specific
    matching network wins. Lookups never raise: unknown or unparsable
    addresses simply have no location.
    """

    def __init__(self, table_path: Optional[str] = None) -> None:
        self._networks: List[Tuple[Any, Dict[str, Any]]] = []
        if table_path:
            self.load(table_path)

    def load(self, table_path: str) -> None:
        path = Path(table_path)
        if not path.exists():
            logger.warning(f"GeoIP table not found at {path}; locations disabled")
            return

        df = pd.read_csv(path, dtype={"network": str, "country": str, "city": str})
        missing = [col for col in REQUIRED_COLUMNS if col not in df.columns]
        if missing:
            raise ValueError(f"GeoIP table {path} is missing columns: {', '.join(missing)}")

        df = df.dropna(subset=["network"])
        networks = []
        for row in df.itertuples(index=False):
            try:
                network = ipaddress.ip_network(row.network.strip(), strict=False)
            except ValueError:
                logger.warning(f"Skipping invalid network in GeoIP table: {row.network}")
                continue
            networks.append((network, {
                "country": None if pd.isna(row.country) else row.country,
                "city": None if pd.isna(row.city) else row.city,
                "latitude": None if pd.isna(row.latitude) else float(row.latitude),
                "longitude": None if pd.isna(row.longitude) else float(row.longitude),
            }))

        # Longest prefix first so the first hit is the most specific
        networks.sort(key=lambda item: item[0].prefixlen, reverse=True)
        self._networks = networks
        logger.info(f"Loaded {len(networks)} GeoIP networks from {path}")

    def __len__(self) -> int:
        return len(self._networks)

    def lookup(self, ip_address: Optional[str]) -> Optional[Dict[str, Any]]:
        if not ip_address or not self._networks:
            return None
        try:
            address = ipaddress.ip_address(ip_address.strip())
        except ValueError:
            return None
        for network, location in self._networks:
            if address.version == network.version and address in network:
                return dict(location)
        return None
