"""Centralised selectors and routes for the CustomerConnect and RouteStar portals."""

# ==== SHARED (transient dialogs) ====
MODALS = (
    ".jconfirm",
    ".modal.show",
    ".modal.in",
    "[role='dialog']:visible",
)
MODAL_CLOSE = (
    ".jconfirm button:has-text('CANCEL')",
    ".jconfirm button:has-text('Cancel')",
    ".jconfirm .jconfirm-closeIcon",
    ".jconfirm button:has-text('OK')",
    ".modal.show button.close",
    ".modal.show button:has-text('Close')",
    ".modal.in button.close",
    "button[aria-label='Close']",
)
COOKIE_ACCEPT = "button:has-text('Accept'), button:has-text('I Agree')"

# ==== CUSTOMERCONNECT (purchase orders) ====
CC_BASE_URL = "https://envirostore.mycustomerconnect.com"
CC_ROUTES = {
    "login": "/index.php?route=account/login",
    "lists": {"orders": "/index.php?route=account/order"},
    "detail": "/index.php?route=account/order/info&order_id=",
}
CC_LOGIN = {
    "username": "input[name='email']",
    "password": "input[name='password']",
    "submit": "input[type='submit'][value='Login']",
    "error_message": ".alert-danger, .warning, .error",
    "logged_in_indicator": "a:has-text('logout'), a[href*='logout'], .account-logout",
}
CC_LIST = {
    "container": "#content",
    "rows": (
        "#content .order-list-item, "
        "#content > div:has(a[href*='order/info']), "
        "#content > div:has-text('Status:'):has-text('Date Added:')"
    ),
    "cells": "div",
    "next_buttons": [".pagination a:text-is('>')", "a:has-text('>')"],
    "next_disabled": [],
    "no_results": ".alert-info",
    "summary": ".pagination + div, .results, div.text-right",
}
CC_DETAIL = {
    "ready": "table.list",
    "info": "table.list tbody tr td.left",
    "item_rows": "table.list tbody tr",
    "totals_rows": "table.list tfoot tr",
}

# ==== ROUTESTAR (sales invoices) ====
RS_BASE_URL = "https://emnrv.routestar.online"
RS_ROUTES = {
    "login": "/web/login/",
    "lists": {"pending": "/web/invoices/", "closed": "/web/closedinvoices/"},
    "detail": "/web/invoice/",
}
RS_LOGIN = {
    "username": "#username",
    "password": "#password",
    "submit": "button[type='submit'].btn-primary",
    "error_message": ".alert-danger, .alert-error",
    "logged_in_indicator": "a:has-text('Logout'), .user-menu, nav.main-nav",
}
RS_LIST = {
    "container": "div.ht_master table.htCore",
    "rows": "div.ht_master table.htCore tbody tr",
    "cells": "td",
    "next_buttons": [
        ".pagination li.next:not(.disabled) a",
        "a[aria-label='Next']:not(.disabled)",
        "button:has-text('Next'):not([disabled])",
        "a:has-text('Next')",
    ],
    "next_disabled": [".pagination li.next.disabled"],
    "no_results": ".htEmpty, .no-records",
    "sort_header": "div.ht_master thead th:has-text('Invoice')",
}
RS_DETAIL = {
    "ready": "div.ht_master",
    "item_rows": "div.ht_master table.htCore tbody tr",
    "subtotal": "#inv_subtotal",
    "tax": "#inv_taxtotal",
    "total": "#inv_total",
    "signed_by": "#txt_signedby",
    "memo": "#txt_memo",
}
