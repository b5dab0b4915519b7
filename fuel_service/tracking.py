"""
Driver location ingestion and geofence evaluation.

Location samples are append-only. Arrival detection only signals; moving an
order to DELIVERED is always an explicit driver action.
"""

import logging
import uuid
from datetime import datetime
from typing import Dict, List, Optional

from fuel_service import geospatial, metrics
from fuel_service.errors import BadRequest, Forbidden, NotFound
from fuel_service.orders import can_track
from fuel_service.schemas import LocationReport, OrderStatus, ProximityStatus, Role
from fuel_service.store import Store

logger = logging.getLogger("fuel-service.tracking")

ROUTE_HISTORY_LIMIT = 500
MAX_LOCATION_LIMIT = 500


def _distance_to_destination(location: Dict, order: Dict) -> float:
    return geospatial.haversine_distance(
        location["latitude"], location["longitude"],
        order["delivery_lat"], order["delivery_lng"],
    )


async def report_location(store: Store, report: LocationReport, reporter: Dict) -> Dict:
    trace_id = reporter.get("trace_id")

    order = None
    if report.order_id:
        order = await store.get_order(report.order_id)
        if not order:
            raise NotFound("Order not found")
        if order["driver_id"] != reporter["id"]:
            raise Forbidden("You are not assigned to this order")

    location = await store.add_location({
        "id": str(uuid.uuid4()),
        "user_id": reporter["id"],
        "order_id": report.order_id,
        "latitude": report.latitude,
        "longitude": report.longitude,
        "accuracy": report.accuracy,
        "timestamp": datetime.utcnow(),
    })
    metrics.LOCATION_REPORTS.inc()

    result = {"location": location}
    if order is None or order["status"] != OrderStatus.IN_PROGRESS.value:
        return result

    # The stored sample stands even if the derived geofence data fails
    try:
        distance = _distance_to_destination(location, order)
        status = geospatial.proximity_status(distance)
        result.update(
            distance=round(distance, 2),
            proximity_status=status,
            is_near_delivery=status in (ProximityStatus.NEARBY, ProximityStatus.ARRIVED),
        )
    except Exception as e:
        logger.exception(f"[TRACE {trace_id}] Geofence evaluation failed for order {order['id']}")
        result["geofence_error"] = str(e)
    return result


async def list_locations(store: Store, requester: Dict, order_id: Optional[str] = None,
                         user_id: Optional[str] = None, limit: int = 100) -> List[Dict]:
    if limit < 1 or limit > MAX_LOCATION_LIMIT:
        raise BadRequest(f"limit must be between 1 and {MAX_LOCATION_LIMIT}")

    if order_id:
        order = await store.get_order(order_id)
        if not order:
            raise NotFound("Order not found")
        if not can_track(requester, order):
            raise Forbidden("You do not have access to this order")
        return await store.list_locations(order_id=order_id, limit=limit, newest_first=False)

    if user_id and user_id != requester["id"]:
        if requester["role"] != Role.admin.value:
            raise Forbidden("You can only view your own location history")
        return await store.list_locations(user_id=user_id, limit=limit)

    return await store.list_locations(user_id=requester["id"], limit=limit)


async def check_geofence(store: Store, order_id: str, driver: Dict) -> Dict:
    trace_id = driver.get("trace_id")
    if driver["role"] != Role.driver.value:
        raise Forbidden("Drivers only")

    order = await store.get_order(order_id)
    if not order:
        raise NotFound("Order not found")
    if order["driver_id"] != driver["id"]:
        raise Forbidden("You are not assigned to this order")

    if order["status"] != OrderStatus.IN_PROGRESS.value:
        return {"message": "Order is not in progress", "status_updated": False}

    latest = await store.latest_location(driver["id"], order_id)
    if not latest:
        return {"message": "No location data available", "status_updated": False}

    distance = _distance_to_destination(latest, order)
    if not geospatial.is_within_geofence(distance, geospatial.ARRIVAL_THRESHOLD_KM):
        return {
            "message": "Not yet at delivery location",
            "distance_to_destination": round(distance, 3),
            "has_arrived": False,
            "status_updated": False,
        }

    metrics.GEOFENCE_ARRIVALS.inc()
    logger.info(f"[TRACE {trace_id}] Driver {driver['id']} inside arrival radius of order {order_id}")
    return {
        "message": "Driver has arrived at delivery location",
        "distance_to_destination": round(distance, 3),
        "has_arrived": True,
        "status_updated": False,
        "suggestion": "Ready to mark as delivered",
    }


async def tracking_snapshot(store: Store, order_id: str, requester: Dict,
                            now: Optional[datetime] = None) -> Dict:
    order = await store.get_order(order_id)
    if not order:
        raise NotFound("Order not found")
    if not can_track(requester, order):
        raise Forbidden("You do not have access to this order")

    driver = None
    current = None
    history = []
    distance = None
    eta = None

    if order["driver_id"]:
        profile = await store.get_driver_profile(order["driver_id"]) or {}
        driver = {
            "id": order["driver_id"],
            "vehicle_type": profile.get("vehicle_type"),
            "license_plate": profile.get("license_plate"),
            "rating": profile.get("rating"),
        }
        current = await store.latest_location(order["driver_id"], order_id)
        history = await store.route_history(order["driver_id"], order_id, ROUTE_HISTORY_LIMIT)
        if current:
            distance = _distance_to_destination(current, order)
            eta = geospatial.estimate_eta(distance, now=now)

    return {
        "order": {
            "id": order["id"],
            "order_number": order["order_number"],
            "status": order["status"],
            "delivery_address": order["delivery_address"],
            "delivery_lat": order["delivery_lat"],
            "delivery_lng": order["delivery_lng"],
        },
        "driver": driver,
        "tracking": {
            "current_location": current,
            "route_history": history,
            "distance_to_destination": round(distance, 2) if distance is not None else None,
            "total_distance_traveled": round(geospatial.route_distance(history), 2),
            "estimated_arrival": eta,
            "last_update": current["timestamp"] if current else None,
        },
    }
