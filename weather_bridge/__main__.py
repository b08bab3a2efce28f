from weather_bridge.cli import main

raise SystemExit(main())
