from __future__ import annotations

import streamlit as st

from ledger.config import get_settings
from ledger.db import get_conn, ensure_schema
from ledger.services.deliveries import delivery_stats
from ledger.services.demo_data import upsert_reference_data
from ledger.services.sales import sales_stats

st.title("⚖️ Lot Ledger")
st.caption(
    "Weighed deliveries in, pieces out. Every sale line is booked against a Real delivery "
    "and, for non-invoiced lots, an invoiced Accounting delivery."
)

settings = get_settings()
conn = get_conn(settings.db_path)
ensure_schema(conn)
upsert_reference_data(conn)

with st.sidebar:
    st.subheader("Environment")
    st.write(f"**Data directory:** `{settings.data_dir}`")
    st.write(f"**Database:** `{settings.db_path.name}`")

ds = delivery_stats(conn)
ss = sales_stats(conn)

c1, c2, c3, c4 = st.columns(4)
c1.metric("Deliveries", ds.total_deliveries)
c2.metric("Deliveries with stock", ds.in_stock)
c3.metric("Finalized sales", ss.total_sales)
c4.metric(f"Revenue ({settings.currency})", f"{ss.total_revenue_eur:,.{settings.decimals_eur}f}")

st.info(
    "Use the left sidebar navigation. Start with **🧪 Data Management** to load demo data, "
    "then try **Deliveries**, **Sales** and **Inventory**.",
    icon="ℹ️",
)
