from endlesscode.app import main

main()
