from anonrelay.bot import main

main()
