from pmux_title import main

main()
