from mediasync.cli import main

main()
