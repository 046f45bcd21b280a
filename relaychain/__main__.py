from relaychain.app import main

main()
