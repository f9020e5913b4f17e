import uvicorn

from rewrite_proxy.vars import HOST, PORT, WS_HEARTBEAT_INTERVAL, WS_TIMEOUT


def main():
    # Protocol-level ping/pong; the relay's JSON heartbeat runs on top of it
    uvicorn.run(
        "rewrite_proxy.server:app",
        host=HOST,
        port=PORT,
        ws_ping_interval=WS_HEARTBEAT_INTERVAL,
        ws_ping_timeout=WS_TIMEOUT,
    )


if __name__ == "__main__":
    main()
