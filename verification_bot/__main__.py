from verification_bot.main import main

main()
