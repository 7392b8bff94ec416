#!/usr/bin/env python3
"""
Mock ClickHouse HTTP interface for trying the proxy locally.

Reports which credentials arrived so you can see what the proxy injected:
- GET  /ping - liveness, like ClickHouse
- any  /     - echoes the query (from ?query= or the body) and the auth headers

Run with: python scripts/mock_upstream.py
Listens on: http://localhost:8123
Point the proxy at it with targetHost: localhost, targetPort: 8123, targetScheme: http
"""
from __future__ import annotations

from datetime import datetime

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, PlainTextResponse
import uvicorn

app = FastAPI(title="Mock ClickHouse", description="Test upstream for the access proxy")

COOKIE_NAME = "CF_Authorization"


def log_request(method: str, query: str, headers: dict):
    """Log the query and which credentials were present."""
    timestamp = datetime.now().strftime("%H:%M:%S")
    user = headers.get("x-clickhouse-user", "-")
    has_key = "yes" if "x-clickhouse-key" in headers else "no"
    has_cookie = "yes" if COOKIE_NAME in headers.get("cookie", "") else "no"

    print(f"[{timestamp}] {method} | user={user} key={has_key} cookie={has_cookie} | {query[:80]}")


@app.get("/ping")
async def ping():
    return PlainTextResponse("Ok.\n")


@app.api_route("/", methods=["GET", "POST"])
async def query(request: Request):
    """Echo the query and the credentials that reached us."""
    body = (await request.body()).decode(errors="replace")
    sql = request.query_params.get("query", "")
    if body:
        sql = f"{sql} {body}".strip()
    headers = dict(request.headers)
    log_request(request.method, sql, headers)

    return JSONResponse({
        "query": sql,
        "user": headers.get("x-clickhouse-user"),
        "key_present": "x-clickhouse-key" in headers,
        "cookie": headers.get("cookie"),
        "host": headers.get("host"),
    })


if __name__ == "__main__":
    print("\nMock ClickHouse")
    print("=" * 50)
    print("Listening on http://localhost:8123")
    print("Endpoints:")
    print("  GET  /ping - liveness")
    print("  *    /     - echo query and credentials")
    print("=" * 50 + "\n")

    uvicorn.run(app, host="127.0.0.1", port=8123, log_level="warning")
