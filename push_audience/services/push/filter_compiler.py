import asyncio
from copy import deepcopy
from typing import Any, Callable, Dict, List, Optional, Tuple

from push_audience.schemas.push_schemas import AppInfo, Message
from push_audience.services.push.platforms import TK, targets, token_path
from push_audience.services.push.providers import DrillProvider, GeoProvider
from push_audience.services.push.store import GeoRegionRepository, HistoryRepository
from push_audience.utils.datetime_utils import now_ms, utc_offset_minutes
from push_audience.utils.errors import UpstreamQueryError
from push_audience.utils.logging import get_logger

# key no user document has; a restriction on it matches nothing
INVALID_GEO = "invalidgeo"

Step = Dict[str, Any]


class FilterCompiler:
    """
    Compiles the audience filter of a message into user restriction steps.

    Geo and drill providers are optional: filter dimensions needing a missing
    provider are skipped. The message filter itself is never modified.
    """

    def __init__(
        self,
        message: Message,
        app: AppInfo,
        history: HistoryRepository,
        geo_regions: GeoRegionRepository,
        geo: Optional[GeoProvider] = None,
        drill: Optional[DrillProvider] = None,
        clock: Callable[[], int] = now_ms,
    ):
        self.message = message
        self.app = app
        self.history = history
        self.geo_regions = geo_regions
        self.geo = geo
        self.drill = drill
        self.clock = clock
        self.logger = get_logger()

    def projection(self) -> Dict[str, int]:
        """Default projection: what mappers need plus personalization fields"""
        project = {"uid": 1, "tz": 1, TK: 1}
        for path in self.message.user_fields:
            project[path] = 1
        return project

    async def steps(self, project: Optional[Dict[str, Any]] = None) -> List[Step]:
        """
        Construct restriction steps for the user collection from message filter

        Args:
            project: user document projection, `projection()` by default

        Returns:
            list of $match steps followed by one $project step
        """
        audience = self.message.filter
        steps: List[Step] = []

        # We have a token
        steps.append(
            {
                "$match": {
                    "$or": [
                        {token_path(p, f): {"$exists": True, "$ne": None}}
                        for p, f in targets(self.message)
                    ]
                }
            }
        )

        if audience.geos and self.geo:
            steps.extend(await self._geos(audience.geos))

        if audience.cohorts:
            steps.append(
                {"$match": {f"chr.{cid}.in": "true" for cid in audience.cohorts}}
            )

        if audience.user:
            restrictions, residual = await self._user_query(deepcopy(audience.user))
            steps.extend(restrictions)
            if residual:
                steps.append({"$match": residual})

        if audience.drill and self.drill:
            steps.extend(await self._drill_query(deepcopy(audience.drill)))

        steps.append({"$project": project or self.projection()})

        self.logger.debug(f"steps: {steps}")
        return steps

    async def _geos(self, ids: List[str]) -> List[Step]:
        regions = await self.geo_regions.find(ids)
        if not regions:
            self.logger.warning(f"None of geos {ids} found, nothing will match")
            return [{"$match": {INVALID_GEO: True}}]
        return [{"$match": {"$or": [self.geo.conds(region) for region in regions]}}]

    async def _user_query(
        self, query: Dict[str, Any]
    ) -> Tuple[List[Step], Dict[str, Any]]:
        """Split a user query into resolved restrictions and the residual query"""
        restrictions: List[Step] = []
        residual = dict(query)

        if "message" in residual:
            uids = await self.history.filter_message(
                self.app.id, residual.pop("message")
            )
            restrictions.append({"$match": {"uid": {"$in": uids}}})

        if "geo" in residual:
            if self.drill and self.geo:
                prepared = self.drill.preprocess_query(residual)
                if prepared is not None:
                    residual = prepared
                regions = await self.geo.query(self.app.id, residual.get("geo"))
                if regions:
                    restrictions.append(
                        {"$match": {"$or": [self.geo.conds(r) for r in regions]}}
                    )
                else:
                    residual[INVALID_GEO] = True
            residual.pop("geo", None)

        return restrictions, residual

    async def _drill_query(self, query: Dict[str, Any]) -> List[Step]:
        query_object = query.get("queryObject") or {}
        chr = query_object.get("chr")

        # cohorts-only query is a plain restriction, no need to drill
        if isinstance(chr, dict) and len(query_object) == 1:
            cohorts: Dict[str, Any] = {}
            for cid in chr.get("$in") or []:
                cohorts[f"chr.{cid}.in"] = "true"
            for cid in chr.get("$nin") or []:
                cohorts[f"chr.{cid}.in"] = {"$exists": False}
            return [{"$match": cohorts}] if cohorts else []

        qstring = {"app_id": self.app.id, **query}
        qstring["queryObject"] = {k: v for k, v in query_object.items() if k != "chr"}
        params = {"time": self.time_context(), "qstring": qstring}

        self.logger.debug(f"Drilling: {params}")
        uids = await self._fetch_users(params)
        self.logger.info(f"Done drilling: {len(uids)} uids")

        return [{"$match": {"uid": {"$in": uids}}}]

    def time_context(self) -> Dict[str, Any]:
        """App-local time context of a drill query"""
        return {
            "timezone": self.app.timezone,
            "offset": utc_offset_minutes(self.app.timezone),
            "timestamp": self.clock(),
        }

    async def _fetch_users(self, params: Dict[str, Any]) -> List[str]:
        loop = asyncio.get_running_loop()
        future: asyncio.Future = loop.create_future()

        def settle(err: Optional[Any], uids: Optional[List[str]]) -> None:
            if future.done():
                return
            if err:
                if not isinstance(err, BaseException):
                    err = UpstreamQueryError(f"Drill query failed: {err}")
                future.set_exception(err)
            else:
                future.set_result(list(uids or []))

        # drill may report from its own thread
        def callback(err: Optional[Any], uids: Optional[List[str]]) -> None:
            loop.call_soon_threadsafe(settle, err, uids)

        self.drill.fetch_users(params, callback)
        return await future
