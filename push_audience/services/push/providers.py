from typing import Any, Callable, Dict, List, Optional, Protocol

FetchUsersCallback = Callable[[Optional[Any], Optional[List[str]]], None]


class GeoProvider(Protocol):
    """Geolocation capability; audiences skip geo filtering when it is absent"""

    def conds(self, region: Dict[str, Any]) -> Dict[str, Any]:
        """User restriction matching users located in the region"""
        ...

    async def query(self, app_id: str, geo: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Regions of an app matching a geo sub-query"""
        ...


class DrillProvider(Protocol):
    """Behavioral (event history) query capability"""

    def preprocess_query(self, query: Dict[str, Any]) -> Dict[str, Any]:
        """Normalize a user query before it is evaluated"""
        ...

    def fetch_users(self, params: Dict[str, Any], callback: FetchUsersCallback) -> None:
        """Resolve a drill query into uids; reports through callback(err, uids)"""
        ...
