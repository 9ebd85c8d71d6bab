from health_wrapper.main import main

main()
