import sys

from course_watcher.main import main


sys.exit(main())
