from __future__ import annotations

import streamlit as st

from ledger.config import get_settings
from ledger.logging import configure_logging

st.set_page_config(page_title="Lot Ledger", page_icon="⚖️", layout="wide")
configure_logging(get_settings())

pages = [
    st.Page("home.py", title="Home", icon="🏠"),
    st.Page("pages/1_🏷️_Qualities.py", title="Qualities", icon="🏷️"),
    st.Page("pages/2_🧩_Articles.py", title="Articles", icon="🧩"),
    st.Page("pages/3_📥_Deliveries.py", title="Deliveries", icon="📥"),
    st.Page("pages/4_🛒_Sales.py", title="Sales", icon="🛒"),
    st.Page("pages/5_📦_Inventory.py", title="Inventory", icon="📦"),
    st.Page("pages/6_📊_Reports.py", title="Reports", icon="📊"),
    st.Page("pages/7_🧪_Data_Management.py", title="Data Management", icon="🧪"),
]

st.navigation(pages).run()
