"""Streamlit operator dashboard for the fleet timeline scheduler."""

from __future__ import annotations

import datetime
from typing import Any, Dict, List, Optional

import pandas as pd
import requests
import streamlit as st

# ==========================================
# Configuration & Constants
# ==========================================
# Point this to your local FastAPI server
API_BASE_URL = "http://127.0.0.1:8000"

VISUAL_STATE_LABELS = {
    "maintenance": "🔧 Maintenance",
    "displaced": "⚠️ Conflict",
    "completed": "✅ Completed",
    "overdue_return": "⏰ Overdue return",
    "ongoing": "🚗 On trip",
    "late_arrival": "🕒 Late pick-up",
    "confirmed": "Confirmed",
    "pending": "Pending",
    "no_show": "No-show",
    "cancelled": "Cancelled",
}

st.set_page_config(
    page_title="Fleet Scheduler",
    page_icon="🚗",
    layout="wide",
)


# ==========================================
# API Helper Functions
# ==========================================
def _request(method: str, path: str, payload: Optional[Dict[str, Any]] = None) -> Optional[Any]:
    try:
        response = requests.request(
            method,
            f"{API_BASE_URL}{path}",
            json=payload,
            timeout=10,
        )
    except requests.exceptions.RequestException as e:
        st.error(f"Backend connection failed: {e}")
        return None
    if response.status_code >= 400:
        try:
            detail = response.json().get("detail", response.text)
        except ValueError:
            detail = response.text
        st.error(f"{response.status_code}: {detail}")
        return None
    return response.json()


def fetch_timeline() -> Optional[Dict[str, Any]]:
    return _request("GET", "/timeline")


def change_view(view: str, anchor: Optional[datetime.date]) -> Optional[Dict[str, Any]]:
    payload: Dict[str, Any] = {"view": view}
    if anchor is not None:
        payload["anchor"] = datetime.datetime.combine(anchor, datetime.time()).isoformat()
    return _request("POST", "/timeline/view", payload)


def navigate(action: str) -> Optional[Dict[str, Any]]:
    return _request("POST", "/timeline/navigate", {"action": action})


def apply_filters(search: str, filter_mode: str) -> Optional[Dict[str, Any]]:
    return _request("POST", "/timeline/filters", {"search": search, "filter_mode": filter_mode})


def fetch_actions(event_id: str) -> List[Dict[str, Any]]:
    return _request("GET", f"/events/{event_id}/actions") or []


def submit_status(event_id: str, status: str, forced: bool = False) -> Optional[Dict[str, Any]]:
    return _request("POST", f"/bookings/{event_id}/status", {"status": status, "forced": forced})


# ==========================================
# Data shaping
# ==========================================
def placements_frame(timeline: Dict[str, Any]) -> pd.DataFrame:
    records = []
    for row in timeline.get("rows", []):
        for placement in row.get("placements", []):
            records.append(
                {
                    "vehicle": row["title"],
                    "plate": row["subtitle"],
                    "booking": placement["event_id"],
                    "customer": placement["title"],
                    "state": VISUAL_STATE_LABELS.get(placement["visual_state"], placement["visual_state"]),
                    "start": pd.to_datetime(placement["start"]),
                    "end": pd.to_datetime(placement["end"]),
                    "buffer (h)": placement["buffer_minutes"] / 60,
                    "amount": placement["amount"],
                    "saving": placement["in_flight"],
                    "ghost": placement["is_ghost"],
                }
            )
    return pd.DataFrame.from_records(records)


def fleet_frame(timeline: Dict[str, Any]) -> pd.DataFrame:
    return pd.DataFrame(
        [
            {
                "vehicle": row["title"],
                "plate": row["subtitle"],
                "tags": ", ".join(row.get("tags", [])),
                "booked in window": row["has_active_booking"],
                "bookings shown": len(row.get("placements", [])),
            }
            for row in timeline.get("rows", [])
        ]
    )


# ==========================================
# UI Page Functions
# ==========================================
def render_timeline_page() -> None:
    st.header("📅 Fleet Timeline")

    col1, col2, col3, col4 = st.columns([2, 2, 1, 1])
    with col1:
        view = st.selectbox("View", ["day", "week", "month"], index=1)
    with col2:
        anchor = st.date_input("Jump to", datetime.date.today())
    with col3:
        if st.button("◀ Prev"):
            navigate("prev")
    with col4:
        if st.button("Next ▶"):
            navigate("next")

    if st.button("Apply view", type="primary"):
        change_view(view, anchor)

    filter_col1, filter_col2 = st.columns(2)
    with filter_col1:
        search = st.text_input("Search vehicle or plate", "")
    with filter_col2:
        filter_mode = st.radio("Show", ["all", "booked", "available"], horizontal=True)
    apply_filters(search, filter_mode)

    timeline = fetch_timeline()
    if not timeline:
        return

    st.subheader(timeline["date_label"])
    if timeline["fetch_error"]:
        st.error("The schedule could not be loaded for this window.")

    st.write("### Fleet")
    st.dataframe(fleet_frame(timeline), use_container_width=True)

    frame = placements_frame(timeline)
    st.write("### Bookings in window")
    if frame.empty:
        st.info("No bookings in this window.")
    else:
        st.dataframe(frame.sort_values(["vehicle", "start"]), use_container_width=True)


def render_booking_page() -> None:
    st.header("🧾 Booking Actions")
    timeline = fetch_timeline()
    if not timeline:
        return
    frame = placements_frame(timeline)
    if frame.empty:
        st.info("No bookings in the current window.")
        return

    event_id = st.selectbox("Booking", frame["booking"].tolist())
    for action in fetch_actions(event_id):
        target = action.get("target_status")
        if target and st.button(action["label"], key=f"action-{action['key']}"):
            if action["key"] == "early_return":
                quote = _request("GET", f"/bookings/{event_id}/early-return-quote")
                if quote:
                    st.json(quote)
                    result = _request("POST", f"/bookings/{event_id}/early-return", {"should_refund": True})
                    if result:
                        st.success(result["message"])
            else:
                result = submit_status(event_id, target)
                if result:
                    st.success(result["message"])

    st.write("### Turnaround buffer")
    hours = st.number_input("Buffer hours", min_value=0, max_value=72, value=1)
    if st.button("Save buffer"):
        result = _request("POST", f"/bookings/{event_id}/buffer", {"buffer_minutes": int(hours) * 60})
        if result:
            st.success(result["message"])


def render_relocation_page() -> None:
    st.header("🔀 Relocate Booking")
    timeline = fetch_timeline()
    if not timeline:
        return
    frame = placements_frame(timeline)
    vehicles = {row["title"]: row["resource_id"] for row in timeline.get("rows", [])}
    if frame.empty or not vehicles:
        st.info("Nothing to relocate in the current window.")
        return

    event_id = st.selectbox("Booking to move", frame["booking"].tolist())
    if st.button("Pick up booking"):
        _request("POST", "/ghost", {"event_id": event_id})

    target = st.selectbox("Target vehicle", list(vehicles))
    override = st.checkbox("Override conflicts (displace other bookings)", value=timeline["override_mode"])
    _request("POST", "/ghost/override", {"enabled": override})
    if st.button("Move here"):
        _request("POST", "/ghost/move", {"resource_id": vehicles[target]})

    timeline = fetch_timeline() or timeline
    ghost = timeline.get("ghost")
    if ghost:
        st.write(f"Status: **{ghost['status']}**")
        if ghost["conflicting_event_ids"]:
            st.warning("Conflicts with: " + ", ".join(ghost["conflicting_event_ids"]))
        price = st.number_input("Price", min_value=0.0, value=0.0, step=100.0)
        col1, col2 = st.columns(2)
        with col1:
            if st.button("Confirm", type="primary"):
                result = _request("POST", "/ghost/confirm", {"new_price": price or None})
                if result:
                    st.success("Relocation submitted")
        with col2:
            if st.button("Discard"):
                _request("DELETE", "/ghost")

    notifications = _request("GET", "/notifications") or []
    if notifications:
        st.write("### Recent activity")
        st.dataframe(pd.DataFrame(notifications), use_container_width=True)


# ==========================================
# Main App Router
# ==========================================
def main() -> None:
    st.sidebar.title("Fleet Scheduler")
    st.sidebar.markdown("---")

    page = st.sidebar.radio(
        "Navigation Module",
        ["Timeline", "Booking Actions", "Relocate Booking"],
    )

    st.sidebar.markdown("---")
    st.sidebar.caption(f"API: {API_BASE_URL}")

    if page == "Timeline":
        render_timeline_page()
    elif page == "Booking Actions":
        render_booking_page()
    elif page == "Relocate Booking":
        render_relocation_page()


if __name__ == "__main__":
    main()
