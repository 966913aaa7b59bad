from __future__ import annotations

import os

from servio import create_app


def main() -> None:
    flask_app = create_app()

    if flask_app.config.get("DEBUG"):
        print("\n=== URL MAP ===")
        for rule in sorted(flask_app.url_map.iter_rules(), key=lambda r: r.rule):
            print(f"{','.join(sorted(rule.methods - {'HEAD', 'OPTIONS'})):<12} {rule.rule}")
        print("===============\n")

    flask_app.run(host="0.0.0.0", port=int(os.environ.get("PORT", 5000)), debug=flask_app.config.get("DEBUG", False))


if __name__ == "__main__":
    main()
