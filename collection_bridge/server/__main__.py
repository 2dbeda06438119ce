from collection_bridge.server.app import main

main()
