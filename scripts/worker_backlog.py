"""
Backlog-role worker entrypoint.

Why this wrapper exists:
- requester와 같은 코드/이미지를 쓰되, cron에서 명령만 바꿔
  backlog 재조회 run을 따로 돌릴 수 있게 한다.
"""

import sys

from scripts.fmv_worker import main


if __name__ == "__main__":
    raise SystemExit(main(["--mode", "backlog", *sys.argv[1:]]))
